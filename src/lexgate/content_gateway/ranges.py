"""HTTP ``Range`` header resolution (single-range subset of RFC 7233)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def header_value(self) -> str:
        """Value for a backend ``Range`` request header."""
        return f"bytes={self.start}-{self.end}"

    def content_range(self, total_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{total_size}"


class _Unsatisfiable(Enum):
    UNSATISFIABLE = "unsatisfiable"


UNSATISFIABLE = _Unsatisfiable.UNSATISFIABLE

RangeResolution = Union[ByteRange, None, _Unsatisfiable]


def resolve_range(range_header: Optional[str], total_size: int) -> RangeResolution:
    """Compute the byte window to serve for ``range_header``.

    Returns ``None`` to serve the whole object (no header, or a header that
    does not match ``bytes=digits?-digits?``; multi-range requests fall in
    this group), a :class:`ByteRange`, or :data:`UNSATISFIABLE`.
    """
    if not range_header:
        return None
    match = _RANGE_RE.match(range_header.strip())
    if match is None:
        return None
    start_text, end_text = match.groups()
    if not start_text and not end_text:
        return None

    if not start_text:
        suffix = int(end_text)
        if suffix <= 0 or total_size <= 0:
            return UNSATISFIABLE
        return ByteRange(start=max(0, total_size - suffix), end=total_size - 1)

    start = int(start_text)
    if start >= total_size:
        return UNSATISFIABLE
    if not end_text:
        return ByteRange(start=start, end=total_size - 1)

    end = int(end_text)
    if end < start:
        return UNSATISFIABLE
    return ByteRange(start=start, end=min(end, total_size - 1))
