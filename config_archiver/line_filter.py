"""
Line Filters
============

Named per-line filters applied to every saved line of a captured dialog
when the device model selects one through its ``line_filter`` attribute.

Features:
- Registry of named filters
- IOS XR filter dropping volatile timestamp and uptime lines
- Utility filters: noop, drop, count_lines
"""

import logging
import re
from typing import Callable, Dict, List

# Configure logging
logger = logging.getLogger(__name__)

LineFilterFunc = Callable[["FilterTable", bytes, int, bool], bytes]


class FilterTable:
    """Registry of line filters keyed by name."""

    def __init__(self):
        self._table: Dict[str, LineFilterFunc] = {}
        self.iosxr_patterns = [
            re.compile(rb"^\w{3}\s\w{3}\s\d{1,2}\s"),  # Thu Feb 11 15:45:43.545 BRST
            re.compile(rb"^Building"),                 # Building configuration...
            re.compile(rb"^!! Last"),                  # !! Last configuration change at ...
            re.compile(rb"^\w+ uptime is "),           # asr9010 uptime is 9 years, ...
        ]
        self._register_defaults()

    def _register_defaults(self):
        self.register("iosxr", filter_iosxr)
        self.register("noop", filter_noop)
        self.register("drop", filter_drop)
        self.register("count_lines", filter_count_lines)

    def register(self, name: str, func: LineFilterFunc):
        """Register a line filter."""
        self._table[name] = func
        logger.debug(f"line filter registered: '{name}'")

    def get(self, name: str) -> LineFilterFunc:
        """Get a line filter by name."""
        try:
            return self._table[name]
        except KeyError:
            raise KeyError(f"line filter not found: '{name}'") from None

    def names(self) -> List[str]:
        return sorted(self._table)

    def apply(self, name: str, data: bytes, debug: bool = False) -> bytes:
        """Run every line of data through the named filter.

        Line terminators are kept; a filter returning an empty line drops
        the line together with its terminator.
        """
        func = self.get(name)
        out = []
        for num, raw in enumerate(data.splitlines(keepends=True), start=1):
            body = raw.rstrip(b"\r\n")
            ending = raw[len(body):]
            filtered = func(self, body, num, debug)
            if not filtered and body:
                continue
            out.append(filtered + ending)
        return b"".join(out)


def filter_noop(table: FilterTable, line: bytes, line_num: int, debug: bool) -> bytes:
    return line


def filter_drop(table: FilterTable, line: bytes, line_num: int, debug: bool) -> bytes:
    return b""


def filter_count_lines(table: FilterTable, line: bytes, line_num: int, debug: bool) -> bytes:
    return f"{line_num}: ".encode() + line


def filter_iosxr(table: FilterTable, line: bytes, line_num: int, debug: bool) -> bytes:
    """Drop IOS XR lines that change on every capture."""
    for pattern in table.iosxr_patterns:
        if pattern.match(line):
            if debug:
                logger.debug(f"filter_iosxr: drop: [{line!r}]")
            return b""
    return line
