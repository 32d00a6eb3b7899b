import importlib.metadata
from collections.abc import Callable
from typing import Optional

__version__ = importlib.metadata.version("cookie_manager")

from ._aggregator import CookieAggregator, CookieListener
from ._binary import BIG_ENDIAN, LITTLE_ENDIAN, BinaryCookieDecoder, ByteCursor, decode_binary_cookies
from ._errors import (
    BoundsError,
    BrowserCookieError,
    FilePermissionError,
    FormatError,
    OperationFailedError,
    ParsingError,
)
from ._models import Browser, Cookie, CookieDomainGroup
from ._sources import (
    DEFAULT_STORES,
    BinaryCookieStore,
    BrowserCookieSource,
    CookieStore,
    DomainDelta,
    SourceListener,
    SourceState,
    TableCookieStore,
    chrome_store,
    firefox_store,
    safari_store,
)
from ._tabular import CHROME_COLUMNS, FIREFOX_COLUMNS, ColumnMapping, RowSource, SQLiteRowSource, TabularCookieReader
from ._watch import FileWatcher, WatchdogFileWatcher

__doc__ = "Aggregate, index and search the cookies of Safari, Chrome and Firefox"


def _store_factory(browser: Browser, cookie_file: Optional[str]) -> Callable[[], CookieStore]:
    return lambda: DEFAULT_STORES[browser](cookie_file)


def load(query: str = "", cookie_files: Optional[dict[Browser, Optional[str]]] = None) -> list[CookieDomainGroup]:
    """Read every available browser once and return the domain groups matching `query`.

    Optionally pass explicit cookie files per browser, browsers left out use their default location"""
    cookie_files = cookie_files or {}
    stores = [_store_factory(browser, cookie_files.get(browser)) for browser in DEFAULT_STORES]
    aggregator = CookieAggregator(stores, monitor=False)
    aggregator.start()
    aggregator.wait_for_startup()
    return aggregator.search(query)


__all__ = [
    "BIG_ENDIAN",
    "CHROME_COLUMNS",
    "DEFAULT_STORES",
    "FIREFOX_COLUMNS",
    "LITTLE_ENDIAN",
    "BinaryCookieDecoder",
    "BinaryCookieStore",
    "BoundsError",
    "Browser",
    "BrowserCookieError",
    "BrowserCookieSource",
    "ByteCursor",
    "ColumnMapping",
    "Cookie",
    "CookieAggregator",
    "CookieDomainGroup",
    "CookieListener",
    "CookieStore",
    "DomainDelta",
    "FilePermissionError",
    "FileWatcher",
    "FormatError",
    "OperationFailedError",
    "ParsingError",
    "RowSource",
    "SQLiteRowSource",
    "SourceListener",
    "SourceState",
    "TableCookieStore",
    "TabularCookieReader",
    "WatchdogFileWatcher",
    "chrome_store",
    "decode_binary_cookies",
    "firefox_store",
    "load",
    "safari_store",
]
