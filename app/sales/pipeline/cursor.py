"""
Forward‑scanning cursor over a window of classified lines.

The assembler states read as "seek until" calls against this window rather
than juggling indexes.  Lookups (``find``, ``find_last``, ``peek``) never
move the cursor; ``seek`` and ``consume_until`` do.
"""
from __future__ import annotations

from typing import Callable, Optional, Union

from app.sales.schemas import ClassifiedLine, Role

Matcher = Union[Role, Callable[[ClassifiedLine], bool]]


def _as_predicate(matcher: Matcher) -> Callable[[ClassifiedLine], bool]:
    if isinstance(matcher, Role):
        return lambda line: line.has(matcher)
    return matcher


class LineWindow:
    """Half‑open window ``[start, end)`` over *lines* with a movable position."""

    def __init__(
        self,
        lines: list[ClassifiedLine],
        start: int = 0,
        end: Optional[int] = None,
    ) -> None:
        self.lines = lines
        self.start = max(0, start)
        self.end = len(lines) if end is None else min(end, len(lines))
        self.position = self.start

    def __len__(self) -> int:
        return self.end - self.start

    def at_end(self) -> bool:
        return self.position >= self.end

    def peek(self, offset: int = 0) -> Optional[ClassifiedLine]:
        idx = self.position + offset
        if self.start <= idx < self.end:
            return self.lines[idx]
        return None

    def line(self, index: int) -> Optional[ClassifiedLine]:
        if self.start <= index < self.end:
            return self.lines[index]
        return None

    def tag(self, index: int, role: Role) -> ClassifiedLine:
        """Add *role* to the line at *index*; roles resolved by position land here."""
        line = self.lines[index]
        if not line.has(role):
            line = line.model_copy(update={"roles": (line.roles - {Role.UNCLASSIFIED}) | {role}})
            self.lines[index] = line
        return line

    def move_to(self, index: int) -> None:
        self.position = min(max(index, self.start), self.end)

    def find(
        self,
        matcher: Matcher,
        start: Optional[int] = None,
        stop: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Optional[int]:
        """Index of the first matching line in ``[start, stop)``; does not move."""
        predicate = _as_predicate(matcher)
        lo = self.position if start is None else max(start, self.start)
        hi = self.end if stop is None else min(stop, self.end)
        if limit is not None:
            hi = min(hi, lo + limit)
        for idx in range(lo, hi):
            if predicate(self.lines[idx]):
                return idx
        return None

    def find_last(
        self,
        matcher: Matcher,
        start: Optional[int] = None,
        stop: Optional[int] = None,
    ) -> Optional[int]:
        """Index of the last matching line in ``[start, stop)``; does not move."""
        predicate = _as_predicate(matcher)
        lo = self.position if start is None else max(start, self.start)
        hi = self.end if stop is None else min(stop, self.end)
        for idx in range(hi - 1, lo - 1, -1):
            if predicate(self.lines[idx]):
                return idx
        return None

    def seek(
        self,
        matcher: Matcher,
        limit: Optional[int] = None,
        stop: Optional[int] = None,
    ) -> Optional[ClassifiedLine]:
        """Move past the next matching line and return it; stay put on a miss."""
        idx = self.find(matcher, stop=stop, limit=limit)
        if idx is None:
            return None
        self.position = idx + 1
        return self.lines[idx]

    def consume_until(self, matcher: Matcher) -> list[ClassifiedLine]:
        """Return lines up to (not including) the next match and stop on it."""
        idx = self.find(matcher)
        stop = self.end if idx is None else idx
        taken = self.lines[self.position:stop]
        self.position = stop
        return taken

    def slice(self, start: int, stop: int) -> list[ClassifiedLine]:
        return self.lines[max(start, self.start):min(stop, self.end)]
