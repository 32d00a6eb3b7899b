import dataclasses
import enum
import http.cookiejar
from collections.abc import Iterable
from typing import Any, Optional


class Browser(str, enum.Enum):
    SAFARI = "Safari"
    CHROME = "Chrome"
    FIREFOX = "Firefox"

    def __str__(self) -> str:
        return self.value


@dataclasses.dataclass(frozen=True, eq=False)
class Cookie:
    """A single cookie as decoded from one browser's store.

    Timestamps are seconds since the Unix epoch. `expiry` is None for session cookies.
    Two cookies are equal when domain, name, value, version and the secure flag match,
    regardless of the browser they came from.
    """

    domain: str
    name: str
    value: str
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    version: int = 0  # 0 = legacy, 1 = RFC 2965, anything else is unknown
    expiry: Optional[float] = None
    creation: float = 0.0
    comment: Optional[str] = None
    source_browser: Browser = Browser.SAFARI
    source_row_id: Optional[int] = None

    def __post_init__(self) -> None:
        # comments only exist for RFC 2965 cookies
        if self.version < 1 and self.comment is not None:
            object.__setattr__(self, "comment", None)

    def _key(self) -> tuple[str, str, str, int, bool]:
        return (self.domain, self.name, self.value, self.version, self.secure)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Cookie):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def identical_to(self, other: "Cookie") -> bool:
        """Field-by-field comparison, stricter than ==."""
        return dataclasses.astuple(self) == dataclasses.astuple(other)

    def to_http_cookie(self) -> http.cookiejar.Cookie:
        # HTTPOnly flag goes in _rest, if present (see https://github.com/python/cpython/pull/17471/files#r511187060)
        rest = {"HTTPOnly": ""} if self.http_only else {}
        domain_specified = domain_initial_dot = self.domain.startswith(".")
        expires = int(self.expiry) if self.expiry is not None else None
        return http.cookiejar.Cookie(
            self.version,
            self.name,
            self.value,
            None,
            False,
            self.domain,
            domain_specified,
            domain_initial_dot,
            self.path,
            bool(self.path),
            self.secure,
            expires,
            expires is None,
            self.comment,
            None,
            rest,
        )

    def as_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["source_browser"] = self.source_browser.value
        return data


def same_cookies(first: Iterable[Cookie], second: Iterable[Cookie]) -> bool:
    """Deep equality of two cookie sequences, order included."""
    first, second = list(first), list(second)
    return len(first) == len(second) and all(a.identical_to(b) for a, b in zip(first, second))


class CookieDomainGroup:
    """All cookies sharing one domain string, across every browser.

    `cookies` is replaced, never mutated in place, so a reader holding a reference
    always sees a complete sequence.
    """

    def __init__(self, domain: str, cookies: Iterable[Cookie] = ()) -> None:
        self.domain = domain
        self.cookies: tuple[Cookie, ...] = ()
        self.primary_version: Optional[int] = None
        for cookie in cookies:
            self.add_cookie(cookie)

    def __repr__(self) -> str:
        return f"CookieDomainGroup({self.domain!r}, {len(self.cookies)} cookies)"

    def __len__(self) -> int:
        return len(self.cookies)

    def __iter__(self):
        return iter(self.cookies)

    def add_cookie(self, cookie: Cookie) -> None:
        self.cookies = (*self.cookies, cookie)
        if self.primary_version is None:
            self.primary_version = cookie.version

    @property
    def browsers(self) -> set[Browser]:
        return {cookie.source_browser for cookie in self.cookies}

    def cookies_from(self, browser: Browser) -> list[Cookie]:
        return [cookie for cookie in self.cookies if cookie.source_browser is browser]

    def replace_browser_cookies(self, browser: Browser, cookies: Iterable[Cookie]) -> int:
        """Drop every cookie from `browser` and append `cookies`. Returns the change in size"""
        before = len(self.cookies)
        kept = tuple(cookie for cookie in self.cookies if cookie.source_browser is not browser)
        self.cookies = (*kept, *cookies)
        self._reset_primary_version()
        return len(self.cookies) - before

    def remove_browser_cookies(self, browser: Browser) -> int:
        return -self.replace_browser_cookies(browser, ())

    def remove_cookie(self, cookie: Cookie) -> bool:
        for index, candidate in enumerate(self.cookies):
            if (
                candidate == cookie
                and candidate.source_browser is cookie.source_browser
                and candidate.source_row_id == cookie.source_row_id
            ):
                self.cookies = self.cookies[:index] + self.cookies[index + 1 :]
                self._reset_primary_version()
                return True
        return False

    def matches(self, term: str) -> bool:
        """Case-insensitive match of one lowercase search term"""
        if term in self.domain.lower():
            return True
        for cookie in self.cookies:
            if term in cookie.name.lower() or term in cookie.value.lower():
                return True
            if term == "secure" and cookie.secure:
                return True
        return False

    def _reset_primary_version(self) -> None:
        self.primary_version = self.cookies[0].version if self.cookies else None
