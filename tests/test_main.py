import json
from pathlib import Path

import pytest

import cookie_manager
from cookie_manager import Browser
from cookie_manager.__main__ import main
from tests.utils import encode_binary_cookies, make_chrome_db, make_firefox_db, safari_cookie


@pytest.fixture
def cookie_files(tmp_path: Path) -> dict[str, str]:
    safari = tmp_path / "Cookies.binarycookies"
    safari.write_bytes(encode_binary_cookies([[safari_cookie("apple.com", "dsid", "abc", secure=True)]]))
    chrome = make_chrome_db(tmp_path / "Cookies", [(1, "google.com", "NID", "xyz", "/", 0, 0, 1)])
    return {"safari": str(safari), "chrome": str(chrome), "firefox": str(tmp_path / "missing.sqlite")}


def cli_args(cookie_files: dict[str, str], *args: str) -> list[str]:
    return [*args, *(f"--{name}-file={path}" for name, path in cookie_files.items())]


def test_load(cookie_files: dict[str, str]) -> None:
    files = {Browser(name.capitalize()): path for name, path in cookie_files.items()}
    groups = cookie_manager.load(cookie_files=files)
    assert [group.domain for group in groups] == ["apple.com", "google.com"]
    assert [group.domain for group in cookie_manager.load("nid", files)] == ["google.com"]


def test_lines(cookie_files: dict[str, str], capsys: pytest.CaptureFixture) -> None:
    main(cli_args(cookie_files))
    lines = capsys.readouterr().out.splitlines()
    assert lines == ["Safari\tapple.com\tdsid\tabc", "Chrome\tgoogle.com\tNID\txyz"]


def test_json(cookie_files: dict[str, str], capsys: pytest.CaptureFixture) -> None:
    main(cli_args(cookie_files, "--json", "secure"))
    dump = json.loads(capsys.readouterr().out)
    assert list(dump) == ["apple.com"]
    [entry] = dump["apple.com"]
    assert entry["name"] == "dsid"
    assert entry["secure"] is True
    assert entry["source_browser"] == "Safari"


def test_no_match_exits_1(cookie_files: dict[str, str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(cli_args(cookie_files, "no-such-cookie"))
    assert excinfo.value.code == 1


def test_bad_arguments_exit_2() -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--no-such-option"])
    assert excinfo.value.code == 2


def test_load_skips_bad_rows_of_one_browser(cookie_files: dict[str, str], tmp_path: Path) -> None:
    firefox = make_firefox_db(
        tmp_path / "cookies.sqlite",
        [(1, "mozilla.org", "bad", "x", "/", "never", 0, 0, 0), (2, "mozilla.org", "ok", "y", "/", 0, 0, 0, 0)],
    )
    files = {Browser(name.capitalize()): path for name, path in cookie_files.items()}
    files[Browser.FIREFOX] = str(firefox)
    groups = cookie_manager.load(cookie_files=files)
    assert [group.domain for group in groups] == ["apple.com", "google.com", "mozilla.org"]
    assert [c.name for c in groups[2].cookies] == ["ok"]
