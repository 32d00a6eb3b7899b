import http.cookiejar
import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import ClassVar, Optional

from ._errors import BrowserCookieError, OperationFailedError
from ._models import Browser, Cookie, CookieDomainGroup, same_cookies
from ._sources import DEFAULT_STORES, BrowserCookieSource, CookieStore, SourceListener, SourceState
from ._watch import FileWatcher, WatchdogFileWatcher

logger = logging.getLogger(__name__)

StoreFactory = Callable[[], CookieStore]


class CookieListener:
    """Notifications sent by `CookieAggregator`. Override the ones you need"""

    def on_parsing_started(self) -> None: ...

    def on_parsing_finished(self) -> None: ...

    def on_progress(self, fraction: float) -> None: ...

    def on_domain_updated(self, group: CookieDomainGroup) -> None: ...

    def on_domain_lost(self, domain: str, browser: Browser) -> None: ...

    def on_source_stopped(self, browser: Browser) -> None: ...

    def on_index_changed(self) -> None: ...


class CookieAggregator(SourceListener):
    """Merges the cookies of every browser into one index keyed by domain.

    All mutations of the index go through the merge methods below while holding
    `self._lock`. Listener notifications are sent after the lock is released.
    """

    INDEX_NOTIFY_EVERY: ClassVar[int] = 50

    def __init__(
        self,
        stores: Optional[Sequence[StoreFactory]] = None,
        watcher_factory: Callable[[], FileWatcher] = WatchdogFileWatcher,
        monitor: bool = True,
        index_notify_every: Optional[int] = None,
        retry_limit: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.store_factories: list[StoreFactory] = list(stores) if stores is not None else list(DEFAULT_STORES.values())
        self.watcher_factory = watcher_factory
        self.monitor = monitor
        self.index_notify_every = index_notify_every or self.INDEX_NOTIFY_EVERY
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay

        self._lock = threading.RLock()
        self._groups: dict[str, CookieDomainGroup] = {}
        self._sorted_domains: list[str] = []
        self._stale = False
        self._cookie_count = 0
        self._pending_changes = 0
        self._active_parse_count = 0
        self._progress: dict[Browser, float] = {}
        self._sources: dict[Browser, BrowserCookieSource] = {}
        self._listener: Optional[CookieListener] = None
        self._startup: list[Future] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stopped = False

    # Lifecycle

    def start(self, listener: Optional[CookieListener] = None) -> None:
        """Start every browser source in parallel. Returns immediately"""
        self._listener = listener
        self._stopped = False
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self.store_factories)), thread_name_prefix="cookie-source-start"
        )
        self._startup = [self._executor.submit(self._start_source, factory) for factory in self.store_factories]
        self._executor.shutdown(wait=False)

    def _start_source(self, factory: StoreFactory) -> Optional[Browser]:
        try:
            store = factory()
        except (BrowserCookieError, OSError) as e:
            logger.info("Cookie store unavailable: %s", e)
            return None
        except Exception:
            logger.exception("Creating a cookie store failed")
            return None
        with self._lock:
            if self._stopped:
                return None
            if store.browser in self._sources:
                logger.warning("Ignoring a second %s cookie store at %s", store.browser, store.path)
                return None
            watcher = self.watcher_factory() if self.monitor else None
            source = BrowserCookieSource(store, self, watcher, self.retry_limit, self.retry_delay)
            self._sources[store.browser] = source
        if not source.initialize():
            with self._lock:
                self._sources.pop(store.browser, None)
            return None
        with self._lock:
            # stop() ran while the first cycle was reading
            if self._stopped:
                return None
            if self.monitor:
                source.start_monitoring()
        return store.browser

    def wait_for_startup(self, timeout: Optional[float] = None) -> set[Browser]:
        """Block until every source finished its first update, return the browsers that came up"""
        done, _ = wait(self._startup, timeout)
        return {future.result() for future in done if future.result() is not None}

    def stop(self) -> None:
        """Detach the listener and stop every source, including ones still starting up"""
        self._listener = None
        with self._lock:
            self._stopped = True
            sources = list(self._sources.values())
        for source in sources:
            source.stop()
        for source in sources:
            source.join(timeout=5)

    def available_browsers(self) -> set[Browser]:
        with self._lock:
            return {browser for browser, source in self._sources.items() if source.state is not SourceState.STOPPED}

    def source(self, browser: Browser) -> Optional[BrowserCookieSource]:
        return self._sources.get(browser)

    # Notifications

    def _notify(self, method: str, *args) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            getattr(listener, method)(*args)
        except Exception:
            logger.exception("Cookie listener failed in %s", method)

    def _note_change(self) -> bool:
        """Count one index mutation, True when on_index_changed is due"""
        self._pending_changes += 1
        if self._pending_changes >= self.index_notify_every:
            self._pending_changes = 0
            return True
        return False

    def _flush_changes(self) -> bool:
        if self._pending_changes:
            self._pending_changes = 0
            return True
        return False

    # SourceListener, the single merge path

    def source_started(self, browser: Browser) -> None:
        with self._lock:
            self._active_parse_count += 1
            self._progress[browser] = 0.0
            first = self._active_parse_count == 1
        if first:
            self._notify("on_parsing_started")

    def source_progress(self, browser: Browser, fraction: float) -> None:
        with self._lock:
            self._progress[browser] = self._progress.get(browser, 0.0) + fraction
            active = self._active_parse_count
            overall = sum(self._progress.values()) / active if active else 1.0
        self._notify("on_progress", min(1.0, overall))

    def source_finished(self, browser: Browser) -> None:
        with self._lock:
            self._active_parse_count = max(0, self._active_parse_count - 1)
            self._progress.pop(browser, None)
            finished = self._active_parse_count == 0
            changed = finished and self._flush_changes()
        if finished:
            self._notify("on_parsing_finished")
        if changed:
            self._notify("on_index_changed")

    def source_stopped(self, browser: Browser) -> None:
        logger.info("No longer tracking %s cookies", browser)
        self._notify("on_source_stopped", browser)

    def domain_updated(self, browser: Browser, domain: str, cookies: list[Cookie]) -> None:
        with self._lock:
            group = self._groups.get(domain)
            if group is None:
                if not cookies:
                    return
                group = CookieDomainGroup(domain)
                self._groups[domain] = group
                self._stale = True
            elif same_cookies(group.cookies_from(browser), cookies):
                return
            self._cookie_count += group.replace_browser_cookies(browser, cookies)
            removed = self._drop_if_empty(group)
            changed = self._note_change()
        if removed:
            self._notify("on_domain_lost", domain, browser)
        else:
            self._notify("on_domain_updated", group)
        if changed:
            self._notify("on_index_changed")

    def domain_lost(self, browser: Browser, domain: str) -> None:
        with self._lock:
            group = self._groups.get(domain)
            if group is None:
                return
            removed = group.remove_browser_cookies(browser)
            if not removed:
                return
            self._cookie_count -= removed
            self._drop_if_empty(group)
            changed = self._note_change()
        self._notify("on_domain_lost", domain, browser)
        if changed:
            self._notify("on_index_changed")

    def _drop_if_empty(self, group: CookieDomainGroup) -> bool:
        if group.cookies:
            return False
        del self._groups[group.domain]
        self._stale = True
        return True

    # Queries

    @property
    def cookie_count(self) -> int:
        return self._cookie_count

    @property
    def domain_count(self) -> int:
        return len(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def _sorted_snapshot(self) -> list[str]:
        with self._lock:
            if self._stale:
                self._sorted_domains = sorted(self._groups)
                self._stale = False
            return self._sorted_domains

    def domain_at(self, index: int) -> Optional[CookieDomainGroup]:
        """The group at position `index` of the alphabetically sorted domains"""
        if index < 0:
            return None
        with self._lock:
            domains = self._sorted_snapshot()
            if index >= len(domains):
                self._stale = True
                domains = self._sorted_snapshot()
                if index >= len(domains):
                    return None
            return self._groups.get(domains[index])

    def group(self, domain: str) -> Optional[CookieDomainGroup]:
        return self._groups.get(domain)

    def groups(self) -> list[CookieDomainGroup]:
        with self._lock:
            return [self._groups[domain] for domain in self._sorted_snapshot()]

    def search(self, query: str) -> list[CookieDomainGroup]:
        """Groups where any whitespace separated term matches the domain, a cookie name or
        value, or where the term is "secure" and a cookie is secure. Case insensitive"""
        terms = [term.lower() for term in query.split()]
        groups = self.groups()
        if not terms:
            return groups
        return [group for group in groups if any(group.matches(term) for term in terms)]

    def cookie_jar(self) -> http.cookiejar.CookieJar:
        cj = http.cookiejar.CookieJar()
        for group in self.groups():
            for cookie in group.cookies:
                cj.set_cookie(cookie.to_http_cookie())
        return cj

    # Deletion

    def delete(self, cookies: Iterable[Cookie]) -> dict[Browser, OperationFailedError]:
        """Delete cookies from their browsers' stores, then from the index.

        Each browser's batch runs in its own transaction, a failing browser does not stop
        the others. Returns the failures by browser."""
        by_browser: dict[Browser, list[Cookie]] = defaultdict(list)
        for cookie in cookies:
            by_browser[cookie.source_browser].append(cookie)

        failures: dict[Browser, OperationFailedError] = {}
        changed = False
        for browser, batch in by_browser.items():
            source = self._sources.get(browser)
            if source is None or not source.store.deletable:
                logger.info("Skipping %d %s cookies, their store does not support deletion", len(batch), browser)
                continue
            try:
                deleted = source.delete(batch)
            except OperationFailedError as e:
                logger.warning("Deleting %s cookies failed: %s", browser, e)
                failures[browser] = e
                continue
            with self._lock:
                for cookie in deleted:
                    group = self._groups.get(cookie.domain)
                    if group is not None and group.remove_cookie(cookie):
                        self._cookie_count -= 1
                        self._drop_if_empty(group)
                        changed = True
        if changed:
            self._notify("on_index_changed")
        return failures
