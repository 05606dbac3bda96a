"""
Tokenizer and response formatter for the word sequence server.

This module holds the pure helpers shared by the reactor and the writer:
- Tokenizer: find the first run of `[A-Za-z0-9_]+` in a text chunk, with at
    most one non-alphanumeric character on each side. Optionally also
    return the second run, which may carry a counter reset value.
- Counter parsing: the second token must be plain base-10 digits that fit
    in an unsigned 64-bit value.
- Transforms: `identity` (send the word back as is) and `reverse` (send the
    characters in reverse order). One transform is used per deployment.
- Formatter: build the response line `<word> <counter>\\n` as UTF-8 bytes.

All comments are in simple English.
"""

from __future__ import annotations

import re
from typing import Callable, Dict, Optional, Tuple

TOKEN_RE = re.compile(r'[^A-Za-z0-9_]?([A-Za-z0-9_]+)[^A-Za-z0-9_]?')

COUNTER_BITS = 64
COUNTER_MODULUS = 1 << COUNTER_BITS
EOT = '\x04'


class ServiceError(Exception):
    """Recoverable processing error raised by a word transform.

    The writer decides (by policy) whether the request is dropped or put
    back at the tail of the queue.
    """


def extract_tokens(text: str, with_reset: bool = True) -> Tuple[Optional[str], Optional[str]]:
    """Return `(word, second)` from a text chunk.

    `word` is None when the chunk has no alphanumeric run; the caller
    drops such chunks. `second` is the next run after the word, or None
    when there is none or `with_reset` is False.
    """
    it = TOKEN_RE.finditer(text)
    first = next(it, None)
    if first is None:
        return None, None
    if not with_reset:
        return first.group(1), None
    second = next(it, None)
    return first.group(1), (second.group(1) if second is not None else None)


def parse_counter(token: str) -> int:
    """Parse a reset token as an unsigned 64-bit decimal value.

    Raises ValueError for anything else (letters, underscores, overflow).
    `int()` alone is too loose here: it accepts `1_000`.
    """
    if not token or not token.isascii() or not token.isdigit():
        raise ValueError(f"not a decimal counter: {token!r}")
    value = int(token)
    if value >= COUNTER_MODULUS:
        raise ValueError(f"counter out of range: {token!r}")
    return value


def _identity(word: str) -> str:
    return word


def _reverse(word: str) -> str:
    return word[::-1]


TRANSFORMS: Dict[str, Callable[[str], str]] = {
    'identity': _identity,
    'reverse': _reverse,
}


def get_transform(name: str) -> Callable[[str], str]:
    """Look up a transform by name; unknown names raise ValueError."""
    try:
        return TRANSFORMS[name]
    except KeyError:
        raise ValueError(f"unknown transform {name!r}; expected one of {sorted(TRANSFORMS)}") from None


def format_response(word: str, counter: int) -> bytes:
    """Build the wire response line for one request."""
    return f"{word} {counter}\n".encode('utf-8')


def next_counter(counter: int) -> int:
    """Increment the sequence counter, wrapping at 2**64."""
    return (counter + 1) % COUNTER_MODULUS
