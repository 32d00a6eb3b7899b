"""Default locations of each browser's cookie store"""

import configparser
import glob
import os
import sys
from collections.abc import Iterator
from typing import NamedTuple, Optional, Union

if sys.platform.startswith("linux") or "bsd" in sys.platform.lower():
    CURRENT_OS = "linux"
elif sys.platform == "win32":
    CURRENT_OS = "windows"
elif sys.platform == "darwin":
    CURRENT_OS = "osx"
else:
    CURRENT_OS = "unknown"


class _WinPath(NamedTuple):
    env: str
    path: str


SAFARI_COOKIE_PATHS: dict[str, tuple[str, ...]] = {
    "osx": (
        "~/Library/Containers/com.apple.Safari/Data/Library/Cookies/Cookies.binarycookies",
        "~/Library/Cookies/Cookies.binarycookies",
    ),
}

CHROME_COOKIE_PATHS: dict[str, tuple[Union[str, _WinPath], ...]] = {
    "linux": (
        "~/.config/google-chrome/Default/Cookies",
        "~/.config/google-chrome/Profile */Cookies",
        "~/.var/app/com.google.Chrome/config/google-chrome/Default/Cookies",
    ),
    "osx": (
        "~/Library/Application Support/Google/Chrome/Default/Cookies",
        "~/Library/Application Support/Google/Chrome/Profile */Cookies",
    ),
    "windows": (
        _WinPath("LOCALAPPDATA", "Google\\Chrome\\User Data\\Default\\Network\\Cookies"),
        _WinPath("LOCALAPPDATA", "Google\\Chrome\\User Data\\Default\\Cookies"),
        _WinPath("LOCALAPPDATA", "Google\\Chrome\\User Data\\Profile *\\Network\\Cookies"),
    ),
}

FIREFOX_DATA_DIRS: dict[str, tuple[Union[str, _WinPath], ...]] = {
    "linux": ("~/snap/firefox/common/.mozilla/firefox", "~/.mozilla/firefox"),
    "osx": ("~/Library/Application Support/Firefox",),
    "windows": (_WinPath("APPDATA", r"Mozilla\Firefox"), _WinPath("LOCALAPPDATA", r"Mozilla\Firefox")),
}


def _expand(path: Union[_WinPath, str]) -> str:
    if isinstance(path, _WinPath):
        return os.path.join(os.getenv(path.env, ""), path.path)
    return os.path.expanduser(path)


def _expand_paths_impl(*paths: Union[_WinPath, str]) -> Iterator[str]:
    for path in map(_expand, paths):
        # glob returns results in arbitrary order, sort to keep the choice predictable
        yield from sorted(glob.iglob(path))


def _expand_paths(*paths: Union[_WinPath, str]) -> Optional[str]:
    return next(_expand_paths_impl(*paths), None)


def safari_cookie_file(os_name: str = CURRENT_OS) -> Optional[str]:
    return _expand_paths(*SAFARI_COOKIE_PATHS.get(os_name, ()))


def chrome_cookie_file(os_name: str = CURRENT_OS) -> Optional[str]:
    return _expand_paths(*CHROME_COOKIE_PATHS.get(os_name, ()))


def get_default_profile(user_data_path: str) -> str:
    """Resolve the default Firefox profile directory from profiles.ini"""
    config = configparser.ConfigParser()
    profiles_ini_path_list: list[str] = glob.glob(os.path.join(user_data_path + "**", "profiles.ini"))
    fallback_path = user_data_path + "**"

    if not profiles_ini_path_list:
        return fallback_path

    profiles_ini_path = profiles_ini_path_list[0]
    config.read(profiles_ini_path, encoding="utf8")

    profile_path = None
    for section in config.sections():
        if section.startswith("Install"):
            profile_path = config[section].get("Default")
            break
        # in ff 72.0.1, if both an Install section and one with Default=1 are present, the former takes precedence
        elif config[section].get("Default") == "1" and not profile_path:
            profile_path = config[section].get("Path")

    for section in config.sections():
        # the Install section has no relative/absolute info, so check the profiles
        if profile_path and config[section].get("Path") == profile_path:
            absolute = config[section].get("IsRelative") == "0"
            return profile_path if absolute else os.path.join(os.path.dirname(profiles_ini_path), profile_path)

    return fallback_path


def firefox_cookie_file(os_name: str = CURRENT_OS) -> Optional[str]:
    for data_dir in map(_expand, FIREFOX_DATA_DIRS.get(os_name, ())):
        if not os.path.isdir(data_dir):
            continue
        profile = get_default_profile(data_dir)
        cookie_files = glob.glob(os.path.join(profile, "cookies.sqlite"))
        if cookie_files:
            return cookie_files[0]
    return None


def firefox_session_files(cookie_file: str) -> tuple[str, str]:
    # current sessions are saved in sessionstore.js, or the lz4 compressed recovery file
    cookies_dir = os.path.dirname(cookie_file)
    return (
        os.path.join(cookies_dir, "sessionstore.js"),
        os.path.join(cookies_dir, "sessionstore-backups", "recovery.jsonlz4"),
    )
