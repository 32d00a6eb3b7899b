import logging
import os
import shutil
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, ClassVar, NamedTuple, Optional, Union

from ._errors import BrowserCookieError, OperationFailedError, ParsingError
from ._models import Browser, Cookie

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]
Column = Union[str, tuple[str, ...]]
ProgressCallback = Callable[[float], None]
DomainGroup = tuple[str, list[Cookie]]


class RowSource(ABC):
    """A relational source of cookie rows addressable by column name"""

    @abstractmethod
    def count(self, table: str) -> int: ...

    @abstractmethod
    def rows(self, table: str, order_by: str) -> Iterator[Row]: ...

    @abstractmethod
    def delete(self, table: str, column: str, ids: Sequence[Any]) -> None: ...

    def close(self) -> None:  # noqa: B027
        pass

    def __enter__(self) -> "RowSource":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()


def _text_factory(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {column[0]: value for column, value in zip(cursor.description, row)}


class _DatabaseConnection:
    """Read-only connection to a database that may be locked by the running browser.

    Tries the read-only URI modes first, then falls back to querying a temporary copy."""

    def __init__(self, database_file: str, try_legacy_first: bool = False) -> None:
        self.__database_file = database_file
        self.__temp_cookie_file: Optional[str] = None
        self.__connection: Optional[sqlite3.Connection] = None
        self.__methods = [self.__sqlite3_connect_readonly]
        if try_legacy_first:
            self.__methods.insert(0, self.__get_connection_legacy)
        else:
            self.__methods.append(self.__get_connection_legacy)

    def __enter__(self) -> sqlite3.Connection:
        return self.get_connection()

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    @staticmethod
    def __check_connection_ok(connection: sqlite3.Connection) -> bool:
        try:
            connection.cursor().execute("select 1 from sqlite_master")
            return True
        except sqlite3.DatabaseError:
            connection.close()
            return False

    def __sqlite3_connect_readonly(self) -> Optional[sqlite3.Connection]:
        uri: str = Path(self.__database_file).absolute().as_uri()
        for options in ("?mode=ro", "?mode=ro&nolock=1", "?mode=ro&immutable=1"):
            try:
                con = sqlite3.connect(uri + options, uri=True, check_same_thread=False)
            except sqlite3.OperationalError:
                continue
            if self.__check_connection_ok(con):
                return con
        return None

    def __get_connection_legacy(self) -> Optional[sqlite3.Connection]:
        with tempfile.NamedTemporaryFile(suffix=".sqlite") as tf:
            self.__temp_cookie_file = tf.name
        try:
            shutil.copyfile(self.__database_file, self.__temp_cookie_file)
        except OSError:
            return None
        con = sqlite3.connect(self.__temp_cookie_file, check_same_thread=False)
        if self.__check_connection_ok(con):
            return con
        return None

    def get_connection(self) -> sqlite3.Connection:
        if self.__connection:
            return self.__connection
        for method in self.__methods:
            con = method()
            if con is not None:
                self.__connection = con
                return con
        raise ParsingError(f"Unable to read database file {self.__database_file}")

    def close(self) -> None:
        if self.__connection:
            self.__connection.close()
            self.__connection = None
        if self.__temp_cookie_file:
            try:
                os.remove(self.__temp_cookie_file)
            except OSError:
                pass
            self.__temp_cookie_file = None


class SQLiteRowSource(RowSource):
    """Row source backed by a browser's SQLite cookie database"""

    DELETE_BATCH_SIZE = 500

    def __init__(self, database_file: str, try_legacy_first: bool = False) -> None:
        self.database_file = database_file
        self.__database = _DatabaseConnection(database_file, try_legacy_first)

    def __connection(self) -> sqlite3.Connection:
        con = self.__database.get_connection()
        con.text_factory = _text_factory
        con.row_factory = _dict_factory
        return con

    def count(self, table: str) -> int:
        try:
            count = self.__connection().execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]
        except sqlite3.DatabaseError as e:
            raise ParsingError(f"Could not count rows of {table} in {self.database_file}: {e}") from e
        return count

    def rows(self, table: str, order_by: str) -> Iterator[Row]:
        try:
            cursor = self.__connection().execute(f"SELECT * FROM {table} ORDER BY {order_by}")
        except sqlite3.DatabaseError as e:
            raise ParsingError(f"Could not query {table} in {self.database_file}: {e}") from e
        while True:
            try:
                batch = cursor.fetchmany(256)
            except sqlite3.DatabaseError as e:
                raise ParsingError(f"Reading {table} failed: {e}") from e
            if not batch:
                return
            yield from batch

    def delete(self, table: str, column: str, ids: Sequence[Any]) -> None:
        """Delete every row whose `column` is in `ids` in a single transaction"""
        if not ids:
            return
        try:
            con = sqlite3.connect(self.database_file, timeout=5)
        except sqlite3.Error as e:
            raise OperationFailedError(f"Could not open {self.database_file} for writing: {e}") from e
        try:
            with con:
                for start in range(0, len(ids), self.DELETE_BATCH_SIZE):
                    batch = list(ids[start : start + self.DELETE_BATCH_SIZE])
                    placeholders = ", ".join("?" * len(batch))
                    con.execute(f"DELETE FROM {table} WHERE {column} IN ({placeholders})", batch)
        except sqlite3.Error as e:
            raise OperationFailedError(f"Deleting from {table} failed: {e}") from e
        finally:
            con.close()
        logger.debug("Deleted %d rows from %s in %s", len(ids), table, self.database_file)

    def close(self) -> None:
        self.__database.close()


class ColumnMapping(NamedTuple):
    """Where each cookie field lives in a table.

    A column given as a tuple lists alternative names, the first present in a row wins.
    Timestamp columns hold seconds since the Unix epoch, 0 meaning "no expiry".
    """

    table: str
    domain: str
    name: Column
    value: Column
    path: Column
    expiry: Column
    creation: Column
    secure: Column
    http_only: Column
    row_id: Optional[str] = None


CHROME_COLUMNS = ColumnMapping(
    table="cookies",
    domain="host_key",
    name="name",
    value="value",
    path="path",
    expiry="expires_utc",
    creation="creation_utc",
    secure=("secure", "is_secure"),  # chrome >=56 renamed the flag columns
    http_only=("httponly", "is_httponly"),
    row_id="creation_utc",
)

FIREFOX_COLUMNS = ColumnMapping(
    table="moz_cookies",
    domain="host",
    name="name",
    value="value",
    path="path",
    expiry="expiry",
    creation="creationTime",
    secure="isSecure",
    http_only="isHttpOnly",
    row_id="id",
)


def _column(row: Row, column: Column, default: Any = None) -> Any:
    names = (column,) if isinstance(column, str) else column
    for name in names:
        if name in row:
            return row[name]
    return default


def _as_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(int(value))


def _as_timestamp(value: Any) -> Optional[float]:
    if value in (None, "", 0):
        return None
    return float(value)


class TabularCookieReader:
    """Produce per-domain cookie groups from a row source sorted by domain"""

    PROGRESS_BATCH: ClassVar[int] = 256

    def __init__(self, columns: ColumnMapping, browser: Browser) -> None:
        self.columns = columns
        self.browser = browser

    def make_cookie(self, row: Row) -> Cookie:
        columns = self.columns
        row_id = _column(row, columns.row_id) if columns.row_id else None
        return Cookie(
            domain=row[columns.domain],
            name=_column(row, columns.name) or "",
            value=_column(row, columns.value) or "",
            path=_column(row, columns.path) or "",
            secure=_as_bool(_column(row, columns.secure)),
            http_only=_as_bool(_column(row, columns.http_only)),
            version=0,
            expiry=_as_timestamp(_column(row, columns.expiry)),
            creation=_as_timestamp(_column(row, columns.creation)) or 0.0,
            source_browser=self.browser,
            source_row_id=row_id,
        )

    def read(self, source: RowSource, on_progress: Optional[ProgressCallback] = None) -> Iterator[DomainGroup]:
        """Yield `(domain, cookies)` for every run of rows sharing a domain.

        `on_progress` receives the consumed fraction of the table every `PROGRESS_BATCH` rows.
        Rows whose values can not be converted are logged and skipped."""
        columns = self.columns
        total = source.count(columns.table)
        pending = 0

        def report(rows: int) -> None:
            if on_progress is not None and rows:
                on_progress(rows / total)

        domain: Optional[str] = None
        cookies: list[Cookie] = []
        for row in source.rows(columns.table, columns.domain):
            pending += 1
            if pending == self.PROGRESS_BATCH:
                report(pending)
                pending = 0
            if row.get(columns.domain) is None:
                continue
            try:
                cookie = self.make_cookie(row)
            except (TypeError, ValueError) as e:
                logger.warning("Skipping %s cookie row for %r: %s", self.browser, row.get(columns.domain), e)
                continue
            if cookie.domain != domain:
                if domain is not None:
                    yield domain, cookies
                domain, cookies = cookie.domain, []
            cookies.append(cookie)
        report(pending)
        if domain is not None:
            yield domain, cookies

    def delete(self, source: RowSource, cookies: Iterable[Cookie]) -> list[Cookie]:
        """Delete `cookies` from the underlying table. Returns the cookies actually targeted"""
        if not self.columns.row_id:
            raise BrowserCookieError(f"{self.browser} cookies have no row id to delete by")
        targeted = [
            cookie for cookie in cookies if cookie.source_browser is self.browser and cookie.source_row_id is not None
        ]
        try:
            source.delete(self.columns.table, self.columns.row_id, [cookie.source_row_id for cookie in targeted])
        except OperationFailedError as e:
            e.browser = self.browser
            raise
        return targeted
