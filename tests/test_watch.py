import threading
import time
from pathlib import Path

from cookie_manager import WatchdogFileWatcher
from cookie_manager._watch import _same_store

TIMEOUT = 10


def wait_in_thread(watcher: WatchdogFileWatcher, path: Path) -> tuple[threading.Thread, list[bool]]:
    result: list[bool] = []
    thread = threading.Thread(target=lambda: result.append(watcher.wait(str(path))), daemon=True)
    thread.start()
    return thread, result


def test_same_store_matches_side_files() -> None:
    assert _same_store("/p/Cookies", "/p/Cookies")
    assert _same_store("/p/Cookies-journal", "/p/Cookies")
    assert _same_store("/p/Cookies-wal", "/p/Cookies")
    assert not _same_store("/p/Cookies2", "/p/Cookies")


def test_wait_returns_on_modification(tmp_path: Path) -> None:
    path = tmp_path / "Cookies"
    path.write_bytes(b"0")
    watcher = WatchdogFileWatcher()
    try:
        thread, result = wait_in_thread(watcher, path)
        deadline = time.monotonic() + TIMEOUT
        # keep writing until the observer is armed and sees a change
        while thread.is_alive() and time.monotonic() < deadline:
            path.write_bytes(b"1")
            thread.join(0.1)
        assert result == [True]
    finally:
        watcher.close()


def test_unrelated_files_do_not_wake(tmp_path: Path) -> None:
    path = tmp_path / "Cookies"
    path.write_bytes(b"0")
    watcher = WatchdogFileWatcher()
    try:
        thread, result = wait_in_thread(watcher, path)
        for _ in range(5):
            (tmp_path / "other").write_bytes(b"1")
            thread.join(0.1)
        assert thread.is_alive()
        assert result == []
    finally:
        watcher.close()
    thread.join(TIMEOUT)
    assert result == [False]


def test_close_wakes_waiter(tmp_path: Path) -> None:
    path = tmp_path / "Cookies"
    path.write_bytes(b"0")
    watcher = WatchdogFileWatcher()
    thread, result = wait_in_thread(watcher, path)
    watcher.close()
    thread.join(TIMEOUT)
    assert result == [False]
    assert watcher.wait(str(path)) is False
