"""Decoder for Safari's paged ``Cookies.binarycookies`` file.

File layout::

    0        4        b"cook"
    4        4        number of pages (n)
    8        4*n      page sizes
    8+4n     ...      page data, concatenated in table order

Page layout::

    0        4        page magic, 256
    4        4        number of cookies (m)
    8        4*m      record offsets, relative to the start of the page
    8+4m     4        0, end of page header

Record layout, every offset relative to the start of the record::

    0        4        record size
    4        4        version (0 legacy, 1 RFC 2965)
    8        4        flags (1 secure, 4 httpOnly, 5 both)
    12       4        padding
    16       16       domain, name, path and value string offsets
    32       4        comment offset, 0 when there is no comment
    36       4        end marker, 0
    40       8        expiry date, Mac epoch double
    48       8        creation date, Mac epoch double
"""

import logging
import struct
from collections.abc import Callable, Iterator
from typing import ClassVar, Literal, Optional

from ._errors import BoundsError, FormatError
from ._models import Browser, Cookie

logger = logging.getLogger(__name__)

ByteOrder = Literal["<", ">"]
BIG_ENDIAN: ByteOrder = ">"
LITTLE_ENDIAN: ByteOrder = "<"

APPLE_TO_UNIX_TIME = 978307200  # seconds from 1970-01-01T00:00:00Z to 2001-01-01T00:00:00Z

ProgressCallback = Callable[[float], None]
DomainGroup = tuple[str, list[Cookie]]


class ByteCursor:
    """Random access and sequential reads over an immutable byte buffer"""

    def __init__(self, data: bytes, endian: ByteOrder = BIG_ENDIAN, position: int = 0) -> None:
        self.data = bytes(data)
        self.endian: ByteOrder = endian
        self.position = position

    def __len__(self) -> int:
        return len(self.data)

    def _check(self, offset: int, size: int) -> None:
        if offset < 0 or offset + size > len(self.data):
            msg = f"Cannot read {size} bytes at offset {offset}, buffer holds {len(self.data)}"
            raise BoundsError(msg)

    def read_u32(self, offset: int, endian: Optional[ByteOrder] = None) -> int:
        self._check(offset, 4)
        return struct.unpack_from(f"{endian or self.endian}I", self.data, offset)[0]

    def read_f64(self, offset: int) -> float:
        # stored as a raw machine double, no byte swapping
        self._check(offset, 8)
        return struct.unpack_from("d", self.data, offset)[0]

    def read_bytes(self, offset: int, size: int) -> bytes:
        self._check(offset, size)
        return self.data[offset : offset + size]

    def read_cstring(self, offset: int) -> str:
        """Read a NUL terminated UTF-8 string starting at `offset`"""
        self._check(offset, 1)
        end = self.data.find(b"\x00", offset)
        if end == -1:
            raise BoundsError(f"Unterminated string at offset {offset}")
        return self.data[offset:end].decode("utf-8", errors="replace")

    def take_u32(self, endian: Optional[ByteOrder] = None) -> int:
        value = self.read_u32(self.position, endian)
        self.position += 4
        return value

    def take_f64(self) -> float:
        value = self.read_f64(self.position)
        self.position += 8
        return value

    def take_bytes(self, size: int) -> bytes:
        value = self.read_bytes(self.position, size)
        self.position += size
        return value

    def slice(self, offset: int, size: int) -> "ByteCursor":
        return ByteCursor(self.read_bytes(offset, size), self.endian)

    @staticmethod
    def epoch_to_timestamp(raw: float) -> float:
        """Convert seconds since 2001-01-01 (Mac epoch) to seconds since the Unix epoch"""
        return raw + APPLE_TO_UNIX_TIME


class BinaryCookieDecoder:
    """Decode one binary cookie file into per-domain cookie groups.

    File-level damage (bad magic, page table pointing past the end of the buffer)
    raises `FormatError`. Damaged pages and records are logged and skipped so one
    bad page can not hide the rest of the store.
    """

    MAGIC: ClassVar[bytes] = b"cook"
    PAGE_MAGIC: ClassVar[int] = 256
    FILE_BYTE_ORDER: ClassVar[ByteOrder] = LITTLE_ENDIAN
    PAGE_MAGIC_BYTE_ORDER: ClassVar[ByteOrder] = LITTLE_ENDIAN
    RECORD_BYTE_ORDER: ClassVar[ByteOrder] = BIG_ENDIAN
    FLAGS: ClassVar[dict[int, tuple[bool, bool]]] = {
        0: (False, False),
        1: (True, False),
        4: (False, True),
        5: (True, True),
    }

    def __init__(self, data: bytes, browser: Browser = Browser.SAFARI) -> None:
        self.browser = browser
        self.__cursor = ByteCursor(data, self.FILE_BYTE_ORDER)
        self.page_sizes: list[int] = []
        self.__parse_header()

    @property
    def page_count(self) -> int:
        return len(self.page_sizes)

    def __parse_header(self) -> None:
        cursor = self.__cursor
        try:
            magic = cursor.take_bytes(4)
            if magic != self.MAGIC:
                raise FormatError(f"Not a binary cookie file, header is {magic!r}")
            page_count = cursor.take_u32()
            # every page needs at least its 4 byte size entry
            if page_count * 4 > len(cursor) - cursor.position:
                raise FormatError(f"Page count {page_count} does not fit in {len(cursor)} bytes")
            self.page_sizes = [cursor.take_u32() for _ in range(page_count)]
        except BoundsError as e:
            raise FormatError(f"Truncated binary cookie header: {e}") from None

        self.__data_start = cursor.position
        if self.__data_start + sum(self.page_sizes) > len(cursor):
            raise FormatError("Page size table points past the end of the file")

    def pages(self) -> Iterator[ByteCursor]:
        offset = self.__data_start
        for size in self.page_sizes:
            yield self.__cursor.slice(offset, size)
            offset += size

    def decode(self, on_progress: Optional[ProgressCallback] = None) -> Iterator[DomainGroup]:
        """Yield `(domain, cookies)` for every run of same-domain records.

        A domain split over several runs is yielded once per run. `on_progress` receives
        `1 / page_count` after each page.
        """
        page_fraction = 1 / self.page_count if self.page_count else 1.0
        for index, page in enumerate(self.pages()):
            yield from self._decode_page(page, index)
            if on_progress is not None:
                on_progress(page_fraction)

    def _read_page_header(self, page: ByteCursor) -> list[int]:
        if page.read_u32(0, self.PAGE_MAGIC_BYTE_ORDER) != self.PAGE_MAGIC:
            raise FormatError("bad page magic")
        page.position = 4
        count = page.take_u32(self.RECORD_BYTE_ORDER)
        if count * 4 > len(page):
            raise FormatError(f"cookie count {count} does not fit in the page")
        offsets = [page.take_u32(self.RECORD_BYTE_ORDER) for _ in range(count)]
        if page.take_u32(self.RECORD_BYTE_ORDER) != 0:
            raise FormatError("missing page header terminator")
        return offsets

    def _decode_page(self, page: ByteCursor, index: int) -> Iterator[DomainGroup]:
        try:
            offsets = self._read_page_header(page)
        except FormatError as e:
            logger.warning("Skipping page %d of binary cookie file: %s", index, e)
            return

        domain: Optional[str] = None
        cookies: list[Cookie] = []
        for offset in offsets:
            try:
                cookie = self._decode_record(page, offset)
            except FormatError as e:
                logger.warning("Skipping cookie record at offset %d of page %d: %s", offset, index, e)
                continue
            if cookie.domain != domain:
                if domain is not None:
                    yield domain, cookies
                domain, cookies = cookie.domain, []
            cookies.append(cookie)
        # a page boundary always closes the current group
        if domain is not None:
            yield domain, cookies

    def _decode_record(self, page: ByteCursor, offset: int) -> Cookie:
        record = ByteCursor(page.data, self.RECORD_BYTE_ORDER, offset)
        _ = record.take_u32()  # record size, unused
        version = record.take_u32()
        flags = record.take_u32()
        if flags not in self.FLAGS:
            logger.warning("Unknown cookie flag %d found", flags)
        secure, http_only = self.FLAGS.get(flags, (False, False))
        padding = record.take_u32()
        if padding != 0:
            logger.debug("Unexpected record padding %#x at offset %d", padding, offset)

        domain_offset, name_offset, path_offset, value_offset = (record.take_u32() for _ in range(4))
        comment_offset = record.take_u32()
        end_marker = record.take_u32()
        if end_marker != 0:
            logger.debug("Unexpected record end marker %#x at offset %d", end_marker, offset)

        expiry = record.epoch_to_timestamp(record.take_f64())
        creation = record.epoch_to_timestamp(record.take_f64())

        def read_string(field_offset: int) -> str:
            return record.read_cstring(offset + field_offset)

        return Cookie(
            domain=read_string(domain_offset),
            name=read_string(name_offset),
            value=read_string(value_offset),
            path=read_string(path_offset),
            secure=secure,
            http_only=http_only,
            version=version,
            expiry=expiry,
            creation=creation,
            comment=read_string(comment_offset) if comment_offset else None,
            source_browser=self.browser,
        )


def decode_binary_cookies(data: bytes, on_progress: Optional[ProgressCallback] = None) -> list[DomainGroup]:
    """Shortcut to decode a whole buffer at once"""
    return list(BinaryCookieDecoder(data).decode(on_progress))
