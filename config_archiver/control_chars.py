"""
Control Character Filter
========================

Cleans terminal output received from a device before it is matched and
saved. The filter works on two byte strings: ``buf`` is the text already
committed by previous reads and ``suffix`` is the newly read chunk. Carriage
return and backspace may erase text that is already in ``buf``.

Features:
- LF and CR LF kept, CR NUL treated as CR LF
- Sole CR erases back to the previous line boundary
- Backspace erases the preceding byte
- ANSI colour and cursor escape sequences removed
- Any other control byte removed
"""

import logging
from typing import Optional, Tuple

# Configure logging
logger = logging.getLogger(__name__)

NUL = 0x00
BS = 0x08
LF = 0x0A
CR = 0x0D
ESC = 0x1B

_CURSOR_FINALS = b"ABCDJK"
_TILDE_KEYS = b"134"


def _escape_length(suffix: bytearray, i: int) -> Optional[int]:
    """Length of a known escape sequence starting at suffix[i], or None."""
    j = i + 1
    if j >= len(suffix) or suffix[j] != ord("["):
        return None

    # ESC [ digits m
    k = j + 1
    while k < len(suffix) and chr(suffix[k]).isdigit():
        k += 1
    if k > j + 1 and k < len(suffix) and suffix[k] == ord("m"):
        return k - i + 1

    k = j + 1
    if k >= len(suffix):
        return None
    if suffix[k] in _CURSOR_FINALS:
        return 3
    if suffix[k] in _TILDE_KEYS and k + 1 < len(suffix) and suffix[k + 1] == ord("~"):
        return 4
    return None


def remove_control_chars(buf: bytes, suffix: bytes, debug: bool = False) -> Tuple[bytes, bytes]:
    """Filter control characters from suffix, possibly trimming buf.

    Returns the new (buf, suffix) pair. Neither input is modified.
    """
    buf = bytearray(buf)
    suffix = bytearray(suffix)

    i = 0
    while i < len(suffix):
        b = suffix[i]

        if b == LF:
            i += 1
            continue

        if b == CR:
            nxt = i + 1
            if nxt < len(suffix):
                if suffix[nxt] == NUL:
                    suffix[nxt] = LF
                if suffix[nxt] == LF:
                    i += 1
                    continue

            # sole CR: carriage return
            j = suffix.rfind(LF, 0, i)
            if j < 0:
                k = buf.rfind(LF)
                if k < 0:
                    del buf[:]
                else:
                    del buf[k:]
                del suffix[:nxt]
                i = 0
                continue

            if j > 0:
                if suffix[j - 1] == CR:
                    j -= 1
            elif buf and buf[-1] == CR:
                del buf[-1]
            del suffix[j:i + 1]
            i = j
            continue

        if b == BS:
            if i > 0:
                del suffix[i - 1:i + 1]
                i -= 1
                continue
            if buf:
                del buf[-1]
            del suffix[0]
            i = 0
            continue

        if b == ESC:
            size = _escape_length(suffix, i)
            if size is not None:
                del suffix[i:i + size]
                continue
            if debug:
                logger.debug(f"remove_control_chars: unknown escape: {bytes(suffix[i:i + 8])!r}")

        if b < 32:
            del suffix[i]
            continue

        i += 1

    return bytes(buf), bytes(suffix)
