class BrowserCookieError(Exception): ...


class FilePermissionError(BrowserCookieError):
    """The cookie store could not be opened, even after retrying"""


class FormatError(BrowserCookieError):
    """A binary cookie file violates a file-level structural invariant"""


class BoundsError(FormatError):
    """A read ran past the end of the buffer"""


class ParsingError(BrowserCookieError):
    """The tabular row source could not be queried"""


class OperationFailedError(BrowserCookieError):
    """A delete statement against a cookie store failed"""

    def __init__(self, message: str, browser=None) -> None:
        super().__init__(message)
        self.browser = browser
