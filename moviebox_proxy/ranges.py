"""Client ``Range`` header negotiation.

Pure functions only: the caller supplies the total length learned from the
metadata probe and gets back the single byte window to serve.

Only one range is ever served.  For a multi-range header the first segment
wins.  Ranges that reach past the end of the resource are rejected rather
than clamped, and so is a suffix longer than the resource.
"""

import re
from dataclasses import dataclass

_SPEC_RE = re.compile(r"^\s*([0-9]*)\s*-\s*([0-9]*)\s*$")


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int
    satisfiable: bool

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total_length: int) -> str:
        if not self.satisfiable:
            return f"bytes */{total_length}"
        return f"bytes {self.start}-{self.end}/{total_length}"


def _unsatisfiable(start: int = 0, end: int = -1) -> ByteRange:
    return ByteRange(start=start, end=end, satisfiable=False)


def full_range(total_length: int) -> ByteRange:
    return ByteRange(0, total_length - 1, satisfiable=total_length > 0)


def parse_range_spec(range_header: str) -> tuple[int | None, int | None] | None:
    """Split ``bytes=<start>-<end>`` into its two optional bounds.

    Returns ``None`` when the header is not a byte range at all or its first
    segment is malformed.  Either bound may come back as ``None``.
    """
    unit, sep, ranges = range_header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        return None
    first = ranges.split(",", 1)[0]
    m = _SPEC_RE.match(first)
    if m is None:
        return None
    raw_start, raw_end = m.groups()
    start = int(raw_start) if raw_start else None
    end = int(raw_end) if raw_end else None
    if start is None and end is None:
        return None
    return start, end


def negotiate(range_header: str | None, total_length: int) -> ByteRange:
    """Compute the byte window to serve for ``range_header``."""
    if range_header is None:
        return full_range(total_length)

    bounds = parse_range_spec(range_header)
    if bounds is None:
        return _unsatisfiable()

    start, end = bounds
    if start is None:
        # Suffix form: the last ``end`` bytes.
        start = total_length - end
        end = total_length - 1
    elif end is None:
        end = total_length - 1

    ok = 0 <= start <= end < total_length
    return ByteRange(start=start, end=end, satisfiable=ok)
