import enum
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import ClassVar, NamedTuple, Optional

from . import _paths
from ._binary import BinaryCookieDecoder, DomainGroup, ProgressCallback
from ._errors import BrowserCookieError, FilePermissionError, FormatError, OperationFailedError, ParsingError
from ._models import Browser, Cookie
from ._session import read_session_cookies
from ._tabular import CHROME_COLUMNS, FIREFOX_COLUMNS, ColumnMapping, SQLiteRowSource, TabularCookieReader
from ._watch import FileWatcher, WatchdogFileWatcher

logger = logging.getLogger(__name__)


class CookieStore(ABC):
    """One browser's backing cookie file and the decoder that understands it"""

    browser: Browser
    path: str

    @property
    def deletable(self) -> bool:
        return False

    def probe(self) -> None:
        """Raise OSError if the backing file can not be opened right now"""
        with Path(self.path).open("rb"):
            pass

    @abstractmethod
    def read(self, on_progress: Optional[ProgressCallback] = None) -> Iterator[DomainGroup]:
        """Re-open the backing file and yield its domain groups in file order"""

    def delete(self, cookies: Sequence[Cookie]) -> list[Cookie]:
        raise OperationFailedError(f"Deleting {self.browser} cookies is not supported", self.browser)

    def __str__(self) -> str:
        return f"{self.browser} ({self.path})"


class BinaryCookieStore(CookieStore):
    def __init__(self, path: str, browser: Browser = Browser.SAFARI) -> None:
        self.path = path
        self.browser = browser

    def read(self, on_progress: Optional[ProgressCallback] = None) -> Iterator[DomainGroup]:
        data = Path(self.path).read_bytes()
        yield from BinaryCookieDecoder(data, self.browser).decode(on_progress)


class TableCookieStore(CookieStore):
    def __init__(
        self,
        path: str,
        columns: ColumnMapping,
        browser: Browser,
        session_files: Sequence[str] = (),
        try_legacy_first: bool = False,
    ) -> None:
        self.path = path
        self.browser = browser
        self.reader = TabularCookieReader(columns, browser)
        self.session_files = tuple(session_files)
        self.try_legacy_first = try_legacy_first

    @property
    def deletable(self) -> bool:
        return self.reader.columns.row_id is not None

    def read(self, on_progress: Optional[ProgressCallback] = None) -> Iterator[DomainGroup]:
        with SQLiteRowSource(self.path, self.try_legacy_first) as source:
            yield from self.reader.read(source, on_progress)
        if not self.session_files:
            return
        grouped: dict[str, list[Cookie]] = {}
        for cookie in read_session_cookies(self.session_files, self.browser):
            grouped.setdefault(cookie.domain, []).append(cookie)
        yield from sorted(grouped.items())

    def delete(self, cookies: Sequence[Cookie]) -> list[Cookie]:
        with SQLiteRowSource(self.path) as source:
            return self.reader.delete(source, cookies)


def _require(cookie_file: Optional[str], browser: Browser) -> str:
    if not cookie_file:
        raise FilePermissionError(f"Failed to find cookies for {browser} browser")
    if not os.path.exists(cookie_file):
        raise FilePermissionError(f"{browser} cookie file {cookie_file} does not exist")
    return cookie_file


def safari_store(cookie_file: Optional[str] = None) -> BinaryCookieStore:
    return BinaryCookieStore(_require(cookie_file or _paths.safari_cookie_file(), Browser.SAFARI))


def chrome_store(cookie_file: Optional[str] = None) -> TableCookieStore:
    path = _require(cookie_file or _paths.chrome_cookie_file(), Browser.CHROME)
    return TableCookieStore(path, CHROME_COLUMNS, Browser.CHROME)


def firefox_store(cookie_file: Optional[str] = None) -> TableCookieStore:
    path = _require(cookie_file or _paths.firefox_cookie_file(), Browser.FIREFOX)
    # firefoxbased seems faster with legacy mode
    return TableCookieStore(
        path, FIREFOX_COLUMNS, Browser.FIREFOX, _paths.firefox_session_files(path), try_legacy_first=True
    )


DEFAULT_STORES: dict[Browser, Callable[[Optional[str]], CookieStore]] = {
    Browser.SAFARI: safari_store,
    Browser.CHROME: chrome_store,
    Browser.FIREFOX: firefox_store,
}


class SourceListener:
    """Callbacks a `BrowserCookieSource` reports into"""

    def source_started(self, browser: Browser) -> None: ...

    def source_progress(self, browser: Browser, fraction: float) -> None: ...

    def domain_updated(self, browser: Browser, domain: str, cookies: list[Cookie]) -> None: ...

    def domain_lost(self, browser: Browser, domain: str) -> None: ...

    def source_finished(self, browser: Browser) -> None: ...

    def source_stopped(self, browser: Browser) -> None: ...


class DomainDelta(NamedTuple):
    updated: dict[str, list[Cookie]]
    lost: list[str]


class SourceState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    MONITORING = "monitoring"
    STOPPED = "stopped"


class BrowserCookieSource:
    """Keeps one browser's cookies fresh.

    Every update cycle re-reads the whole store and reports each domain with its full
    cookie list, then reports the domains that disappeared since the previous cycle.
    Monitoring waits on a `FileWatcher` in its own thread and hands each cycle to a
    single worker, so cycles of one source never overlap.
    """

    RETRY_LIMIT: ClassVar[int] = 10
    RETRY_DELAY: ClassVar[float] = 1.0

    def __init__(
        self,
        store: CookieStore,
        listener: SourceListener,
        watcher: Optional[FileWatcher] = None,
        retry_limit: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.listener = listener
        self.retry_limit = self.RETRY_LIMIT if retry_limit is None else retry_limit
        self.retry_delay = self.RETRY_DELAY if retry_delay is None else retry_delay
        self.state = SourceState.UNINITIALIZED
        self.__watcher = watcher
        self.__previous_domains: set[str] = set()
        self.__in_flight = 0
        self.__lock = threading.Lock()
        self.__stopping = threading.Event()
        self.__cycle_pending = threading.Event()
        self.__monitor_thread: Optional[threading.Thread] = None
        self.__executor: Optional[ThreadPoolExecutor] = None

    def __repr__(self) -> str:
        return f"<BrowserCookieSource {self.store} {self.state.value}>"

    @property
    def browser(self) -> Browser:
        return self.store.browser

    @property
    def in_flight(self) -> int:
        """Number of update cycles currently parsing"""
        return self.__in_flight

    @property
    def domains(self) -> frozenset[str]:
        return frozenset(self.__previous_domains)

    def initialize(self) -> bool:
        """Run the first update cycle. Returns False when the store is unavailable"""
        if self.state is not SourceState.UNINITIALIZED:
            return self.state is not SourceState.STOPPED
        try:
            self.update()
        except (BrowserCookieError, OSError) as e:
            logger.info("%s cookies are unavailable: %s", self.browser, e)
            self.__mark_unavailable()
            return False
        except Exception:
            logger.exception("Reading %s cookies failed", self.browser)
            self.__mark_unavailable()
            return False
        with self.__lock:
            # stop() may have run while the first cycle was reading
            if self.state is SourceState.UNINITIALIZED:
                self.state = SourceState.READY
            return self.state is SourceState.READY

    def __mark_unavailable(self) -> None:
        with self.__lock:
            self.state = SourceState.STOPPED
        self.__stopping.set()

    def update(self) -> DomainDelta:
        """Re-read the store and report what changed to the listener"""
        with self.__lock:
            self.__in_flight += 1
        self.listener.source_started(self.browser)
        try:
            return self.__update()
        finally:
            with self.__lock:
                self.__in_flight -= 1
            self.listener.source_finished(self.browser)

    def __update(self) -> DomainDelta:
        browser = self.browser
        seen: dict[str, list[Cookie]] = {}

        def on_progress(fraction: float) -> None:
            self.listener.source_progress(browser, fraction)

        # a domain can come back in a later run, report each one once the whole store was read
        for domain, cookies in self.store.read(on_progress):
            if self.__stopping.is_set():
                break
            seen.setdefault(domain, []).extend(cookies)

        if self.__stopping.is_set():
            return DomainDelta(seen, [])
        for domain, cookies in seen.items():
            self.listener.domain_updated(browser, domain, list(cookies))
        lost = [domain for domain in sorted(self.__previous_domains) if domain not in seen]
        for domain in lost:
            self.listener.domain_lost(browser, domain)
        self.__previous_domains = set(seen)
        return DomainDelta(seen, lost)

    def start_monitoring(self) -> None:
        if self.state is not SourceState.READY:
            raise BrowserCookieError(f"Can not monitor {self.browser} cookies from state {self.state.value}")
        if self.__watcher is None:
            self.__watcher = WatchdogFileWatcher()
        self.__executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.browser}-parse")
        self.__monitor_thread = threading.Thread(
            target=self.__monitor, name=f"{self.browser}-monitor", daemon=True
        )
        self.state = SourceState.MONITORING
        self.__monitor_thread.start()

    def __open_with_retry(self) -> None:
        for attempt in range(1, self.retry_limit + 1):
            try:
                self.store.probe()
                return
            except OSError as e:
                logger.debug("Opening %s failed (attempt %d/%d): %s", self.store, attempt, self.retry_limit, e)
            if self.__stopping.wait(self.retry_delay):
                break
        raise FilePermissionError(f"Could not open {self.store.path}")

    def __monitor(self) -> None:
        assert self.__watcher is not None
        assert self.__executor is not None
        while not self.__stopping.is_set():
            try:
                self.__open_with_retry()
                if not self.__watcher.wait(self.store.path):
                    break
            except (FilePermissionError, OSError) as e:
                if not self.__stopping.is_set():
                    logger.warning("Stopped tracking %s cookies: %s", self.browser, e)
                break
            if self.__stopping.is_set():
                break
            if self.__cycle_pending.is_set():
                logger.debug("%s update already pending", self.browser)
                continue
            self.__cycle_pending.set()
            try:
                self.__executor.submit(self.__run_cycle)
            except RuntimeError:  # executor already shut down
                break
        self.stop()

    def __run_cycle(self) -> None:
        # changes from here on need another cycle
        self.__cycle_pending.clear()
        if self.__stopping.is_set():
            return
        try:
            self.update()
        except (FormatError, ParsingError) as e:
            logger.warning("Keeping the previous %s cookies, update failed: %s", self.browser, e)
        except OSError as e:
            logger.warning("Could not read %s: %s", self.store.path, e)
        except Exception:
            logger.exception("Unexpected error while updating %s cookies", self.browser)

    def delete(self, cookies: Iterable[Cookie]) -> list[Cookie]:
        """Delete `cookies` from the backing store, returns the ones actually deleted"""
        if not self.store.deletable:
            raise OperationFailedError(f"Deleting {self.browser} cookies is not supported", self.browser)
        return self.store.delete(list(cookies))

    def stop(self) -> None:
        """Stop monitoring. Takes effect at the next wake-up or retry boundary"""
        with self.__lock:
            if self.state is SourceState.STOPPED:
                return
            self.state = SourceState.STOPPED
        self.__stopping.set()
        if self.__watcher is not None:
            self.__watcher.close()
        if self.__executor is not None:
            self.__executor.shutdown(wait=False)
        self.listener.source_stopped(self.browser)

    def join(self, timeout: Optional[float] = None) -> None:
        if self.__monitor_thread is not None and self.__monitor_thread is not threading.current_thread():
            self.__monitor_thread.join(timeout)
