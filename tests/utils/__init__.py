import logging
import queue
import sqlite3
import struct
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Optional

from cookie_manager import Browser, Cookie, CookieListener, FileWatcher, SourceListener

logger = logging.getLogger("cookie_manager.tests")

APPLE_TO_UNIX_TIME = 978307200


def encode_record(cookie: Cookie, flags: Optional[int] = None, padding: int = 0, end_marker: int = 0) -> bytes:
    """Encode one binary cookie record the way the decoder expects it"""
    if flags is None:
        flags = (1 if cookie.secure else 0) | (4 if cookie.http_only else 0)
    strings = [cookie.domain, cookie.name, cookie.path, cookie.value]
    if cookie.comment is not None:
        strings.append(cookie.comment)
    encoded = [s.encode("utf-8") + b"\x00" for s in strings]

    header_size = 56
    offsets = []
    position = header_size
    for data in encoded:
        offsets.append(position)
        position += len(data)
    comment_offset = offsets[4] if cookie.comment is not None else 0

    expiry = (cookie.expiry or APPLE_TO_UNIX_TIME) - APPLE_TO_UNIX_TIME
    creation = cookie.creation - APPLE_TO_UNIX_TIME
    header = struct.pack(
        ">10I", position, cookie.version, flags, padding, *offsets[:4], comment_offset, end_marker
    ) + struct.pack("dd", expiry, creation)
    return header + b"".join(encoded)


def encode_page(records: Sequence[bytes], page_magic: int = 256, terminator: int = 0) -> bytes:
    header_size = 12 + 4 * len(records)
    offsets = []
    position = header_size
    for record in records:
        offsets.append(position)
        position += len(record)
    header = struct.pack("<I", page_magic) + struct.pack(f">I{len(records)}I", len(records), *offsets)
    return header + struct.pack(">I", terminator) + b"".join(records)


def encode_binary_cookies(pages: Sequence[Iterable[Cookie]]) -> bytes:
    """Build a complete binary cookie file, one list of cookies per page"""
    return encode_pages([encode_page([encode_record(cookie) for cookie in page]) for page in pages])


def encode_pages(raw_pages: Sequence[bytes], magic: bytes = b"cook") -> bytes:
    table = struct.pack(f"<I{len(raw_pages)}I", len(raw_pages), *(len(page) for page in raw_pages))
    return magic + table + b"".join(raw_pages)


def safari_cookie(domain: str, name: str, value: str = "v", **kwargs: Any) -> Cookie:
    kwargs.setdefault("expiry", 1_900_000_000.0)
    kwargs.setdefault("creation", 1_600_000_000.0)
    return Cookie(domain=domain, name=name, value=value, source_browser=Browser.SAFARI, **kwargs)


CHROME_OLD_SCHEMA = (
    "CREATE TABLE cookies (creation_utc INTEGER NOT NULL, host_key TEXT NOT NULL, name TEXT NOT NULL, "
    "value TEXT NOT NULL, path TEXT NOT NULL, expires_utc INTEGER NOT NULL, secure INTEGER NOT NULL, "
    "httponly INTEGER NOT NULL)"
)
CHROME_NEW_SCHEMA = (
    "CREATE TABLE cookies (creation_utc INTEGER NOT NULL, host_key TEXT NOT NULL, name TEXT NOT NULL, "
    "value TEXT NOT NULL, encrypted_value BLOB DEFAULT '', path TEXT NOT NULL, expires_utc INTEGER NOT NULL, "
    "is_secure INTEGER NOT NULL, is_httponly INTEGER NOT NULL)"
)
FIREFOX_SCHEMA = (
    "CREATE TABLE moz_cookies (id INTEGER PRIMARY KEY, host TEXT, name TEXT, value TEXT, path TEXT, "
    "expiry INTEGER, creationTime INTEGER, isSecure INTEGER, isHttpOnly INTEGER)"
)


def make_chrome_db(path: Path, rows: Iterable[tuple], new_schema: bool = False) -> Path:
    """rows: (creation_utc, host_key, name, value, path, expires_utc, secure, httponly)"""
    con = sqlite3.connect(path)
    with con:
        con.execute(CHROME_NEW_SCHEMA if new_schema else CHROME_OLD_SCHEMA)
        if new_schema:
            con.executemany(
                "INSERT INTO cookies (creation_utc, host_key, name, value, path, expires_utc, is_secure, is_httponly) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        else:
            con.executemany("INSERT INTO cookies VALUES (?, ?, ?, ?, ?, ?, ?, ?)", rows)
    con.close()
    return path


def make_firefox_db(path: Path, rows: Iterable[tuple]) -> Path:
    """rows: (id, host, name, value, path, expiry, creationTime, isSecure, isHttpOnly)"""
    con = sqlite3.connect(path)
    with con:
        con.execute(FIREFOX_SCHEMA)
        con.executemany("INSERT INTO moz_cookies VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)", rows)
    con.close()
    return path


class FakeWatcher(FileWatcher):
    """File watcher driven by the test through `trigger()`"""

    def __init__(self) -> None:
        self.events: "queue.Queue[bool]" = queue.Queue()
        self.closed = False
        self.waits = 0

    def trigger(self) -> None:
        self.events.put(True)

    def wait(self, path: str) -> bool:
        self.waits += 1
        woken = self.events.get()
        return woken and not self.closed

    def close(self) -> None:
        self.closed = True
        self.events.put(False)


class RecordingSourceListener(SourceListener):
    def __init__(self) -> None:
        self.events: list[tuple] = []
        self.finished = threading.Event()
        self.stopped = threading.Event()

    def source_started(self, browser: Browser) -> None:
        self.events.append(("started", browser))

    def source_progress(self, browser: Browser, fraction: float) -> None:
        self.events.append(("progress", browser, fraction))

    def domain_updated(self, browser: Browser, domain: str, cookies: list[Cookie]) -> None:
        self.events.append(("updated", browser, domain, list(cookies)))

    def domain_lost(self, browser: Browser, domain: str) -> None:
        self.events.append(("lost", browser, domain))

    def source_finished(self, browser: Browser) -> None:
        self.events.append(("finished", browser))
        self.finished.set()

    def source_stopped(self, browser: Browser) -> None:
        self.events.append(("stopped", browser))
        self.stopped.set()

    def of_kind(self, kind: str) -> list[tuple]:
        return [event for event in self.events if event[0] == kind]


class RecordingListener(CookieListener):
    def __init__(self) -> None:
        self.events: list[tuple] = []
        self.finished = threading.Event()

    def on_parsing_started(self) -> None:
        self.events.append(("started",))

    def on_parsing_finished(self) -> None:
        self.events.append(("finished",))
        self.finished.set()

    def on_progress(self, fraction: float) -> None:
        self.events.append(("progress", fraction))

    def on_domain_updated(self, group) -> None:
        self.events.append(("updated", group.domain))

    def on_domain_lost(self, domain: str, browser: Browser) -> None:
        self.events.append(("lost", domain, browser))

    def on_source_stopped(self, browser: Browser) -> None:
        self.events.append(("stopped", browser))

    def on_index_changed(self) -> None:
        self.events.append(("index_changed",))

    def count(self, kind: str) -> int:
        return sum(1 for event in self.events if event[0] == kind)
