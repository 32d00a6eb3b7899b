"""Session-only cookies that Firefox keeps outside of cookies.sqlite"""

import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import lz4.block

from ._models import Browser, Cookie

logger = logging.getLogger(__name__)

MOZLZ4_MAGIC = b"mozLz40\0"


def _create_session_cookie(cookie_json: dict[str, Any], browser: Browser) -> Cookie:
    return Cookie(
        domain=cookie_json.get("host", ""),
        name=cookie_json.get("name", ""),
        value=cookie_json.get("value", ""),
        path=cookie_json.get("path", ""),
        secure=bool(cookie_json.get("secure", False)),
        http_only=bool(cookie_json.get("httponly", False)),
        source_browser=browser,
    )


def _load_session_json(session_file: str) -> Any:
    with Path(session_file).open("rb") as file_obj:
        if session_file.endswith("lz4"):
            if file_obj.read(8) != MOZLZ4_MAGIC:
                raise ValueError("missing mozLz4 header")
            return json.loads(lz4.block.decompress(file_obj.read()))
        return json.load(file_obj)


def _cookies_in(json_data: Any) -> Iterable[dict[str, Any]]:
    if not isinstance(json_data, dict):
        return
    yield from json_data.get("cookies", [])
    for window in json_data.get("windows", []):
        yield from window.get("cookies", [])


def read_session_cookies(session_files: Iterable[str], browser: Browser = Browser.FIREFOX) -> list[Cookie]:
    """Collect cookies from sessionstore.js / recovery.jsonlz4 files that exist.

    A file that can not be parsed is logged and ignored."""
    cookies: list[Cookie] = []
    for session_file in session_files:
        if not os.path.exists(session_file):
            continue
        try:
            json_data = _load_session_json(session_file)
        except (OSError, ValueError, lz4.block.LZ4BlockError) as e:
            logger.warning("Error parsing %s session file %s: %s", browser, session_file, e)
            continue
        cookies.extend(
            _create_session_cookie(cookie, browser) for cookie in _cookies_in(json_data) if cookie.get("host")
        )
    return cookies
