import argparse
import json
import logging
from collections.abc import Sequence
from typing import Optional

import cookie_manager
from cookie_manager import Browser


def parse_args(args: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        prog="cookie_manager",
        description="Search the cookies of every installed browser.",
        epilog="Exit status is 0 if a cookie matched, 1 if nothing matched, and 2 if errors occurred",
    )
    parser.add_argument("query", nargs="*", help="Terms matched against domains, cookie names and values")
    parser.add_argument(
        "-j",
        "--json",
        action="store_true",
        help="Output JSON with all cookie details, rather than one line per cookie",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log parsing details to stderr")
    group = parser.add_argument_group("Cookie files (default is to autodetect)")
    for browser in Browser:
        group.add_argument(
            f"--{browser.value.lower()}-file",
            dest=browser.value.lower(),
            metavar="PATH",
            help=f"Use a specific {browser} cookie file",
        )
    return parser, parser.parse_args(args)


def main(args: Optional[Sequence[str]] = None):
    parser, p_args = parse_args(args)
    logging.basicConfig(level=logging.DEBUG if p_args.verbose else logging.WARNING)
    cookie_files = {browser: getattr(p_args, browser.value.lower()) for browser in Browser}
    try:
        groups = cookie_manager.load(" ".join(p_args.query), cookie_files)
    except cookie_manager.BrowserCookieError as e:
        parser.error(e.args[0])

    if not groups:
        raise SystemExit(1)

    if p_args.json:
        dump = {group.domain: [cookie.as_dict() for cookie in group.cookies] for group in groups}
        print(json.dumps(dump, indent=2))  # noqa: T201
        return

    for group in groups:
        for cookie in group.cookies:
            print(f"{cookie.source_browser}\t{group.domain}\t{cookie.name}\t{cookie.value}")  # noqa: T201


if __name__ == "__main__":
    main()
