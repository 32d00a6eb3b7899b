import os
from pathlib import Path

import pytest

from cookie_manager import _paths


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


def test_chrome_cookie_file_prefers_default_profile(home: Path) -> None:
    for profile in ("Profile 2", "Default"):
        directory = home / ".config" / "google-chrome" / profile
        directory.mkdir(parents=True)
        (directory / "Cookies").touch()
    assert _paths.chrome_cookie_file("linux") == str(home / ".config" / "google-chrome" / "Default" / "Cookies")


def test_unknown_os_has_no_defaults(home: Path) -> None:
    assert _paths.safari_cookie_file("linux") is None
    assert _paths.chrome_cookie_file("unknown") is None
    assert _paths.firefox_cookie_file("unknown") is None


def test_firefox_profile_from_install_section(home: Path) -> None:
    data_dir = home / ".mozilla" / "firefox"
    profile = data_dir / "abcd.default-release"
    profile.mkdir(parents=True)
    (profile / "cookies.sqlite").touch()
    (data_dir / "profiles.ini").write_text(
        "[Install4F96D1932A9F858E]\nDefault=abcd.default-release\n\n"
        "[Profile0]\nName=default-release\nIsRelative=1\nPath=abcd.default-release\n"
    )
    assert _paths.get_default_profile(str(data_dir)) == str(profile)
    assert _paths.firefox_cookie_file("linux") == str(profile / "cookies.sqlite")


def test_firefox_absolute_default_profile(tmp_path: Path) -> None:
    data_dir = tmp_path / "firefox"
    data_dir.mkdir()
    (data_dir / "profiles.ini").write_text("[Profile0]\nDefault=1\nIsRelative=0\nPath=/srv/profile\n")
    assert _paths.get_default_profile(str(data_dir)) == "/srv/profile"


def test_firefox_session_files() -> None:
    js, lz4_file = _paths.firefox_session_files(os.path.join("p", "cookies.sqlite"))
    assert js == os.path.join("p", "sessionstore.js")
    assert lz4_file == os.path.join("p", "sessionstore-backups", "recovery.jsonlz4")
