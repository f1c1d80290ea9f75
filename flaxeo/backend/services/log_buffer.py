"""
Bounded, slot-tagged log buffer shared by the process supervisors.

Entries carry a monotonically increasing index so that pollers can ask for
"everything since N" even after the oldest entries have been evicted.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional


@dataclass
class LogEntry:
    """One captured stdout/stderr chunk or supervisor note."""
    index: int
    slot: str
    text: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "slot": self.slot,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


class LogBuffer:
    """Ring buffer of log entries; the oldest entries are dropped past capacity."""

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._next_index = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total(self) -> int:
        """Number of entries ever appended since the last clear."""
        return self._next_index

    @property
    def first_index(self) -> int:
        """Index of the oldest entry still held."""
        return self._entries[0].index if self._entries else self._next_index

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, slot: str, text: str) -> LogEntry:
        entry = LogEntry(index=self._next_index, slot=slot, text=text)
        self._next_index += 1
        self._entries.append(entry)
        return entry

    def tail(self, count: int = 50, slot: Optional[str] = None) -> List[LogEntry]:
        """Most recent entries, optionally restricted to one slot."""
        entries = [e for e in self._entries if slot is None or e.slot == slot]
        return entries[-count:] if count > 0 else []

    def since(self, since: int = 0, limit: int = 100) -> Dict[str, Any]:
        """
        Page through the buffer.

        Args:
            since: Absolute index of the first entry wanted
            limit: Maximum number of entries to return

        Returns:
            dict with the entry texts, the running total and whether more remain
        """
        start = max(since, self.first_index)
        offset = start - self.first_index
        window = list(self._entries)[offset:offset + max(limit, 0)]
        next_index = window[-1].index + 1 if window else start
        return {
            "logs": [e.text for e in window],
            "entries": [e.to_dict() for e in window],
            "total": self._next_index,
            "next": next_index,
            "hasMore": next_index < self._next_index,
        }

    def text(self, slot: Optional[str] = None) -> str:
        return "".join(e.text for e in self._entries if slot is None or e.slot == slot)

    def clear(self) -> None:
        self._entries.clear()
        self._next_index = 0
