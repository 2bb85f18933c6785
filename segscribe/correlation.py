"""Maps provider correlation tokens back to ``(job_id, segment_index)``.

Every submission is also labelled ``job_<id>_segment_<n>.wav``; when a
token was never recorded, the label pattern is the fallback.
"""
import re
from typing import NamedTuple


LABEL_PATTERN = re.compile(r"job_([^_]+)_segment_(\d+)")


class SegmentRef(NamedTuple):
    job_id: str
    segment_index: int


def segment_label(job_id: str, segment_index: int) -> str:
    return f"job_{job_id}_segment_{segment_index}.wav"


def parse_segment_label(value: str | None) -> SegmentRef | None:
    if not value:
        return None
    match = LABEL_PATTERN.search(value)
    if not match:
        return None
    return SegmentRef(match.group(1), int(match.group(2)))


class CorrelationTable:
    def __init__(self):
        self._entries: dict[str, SegmentRef] = {}

    def record(self, token: str, job_id: str, segment_index: int):
        self._entries[token] = SegmentRef(job_id, segment_index)

    def resolve(self, token: str | None) -> SegmentRef | None:
        if not token:
            return None
        return self._entries.get(token)

    def lookup(self, *candidates: str | None) -> SegmentRef | None:
        """Table hit on any candidate first, then the label pattern on each."""
        for candidate in candidates:
            ref = self.resolve(candidate)
            if ref is not None:
                return ref
        for candidate in candidates:
            ref = parse_segment_label(candidate)
            if ref is not None:
                return ref
        return None

    def evict_job(self, job_id: str) -> int:
        stale = [token for token, ref in self._entries.items() if ref.job_id == job_id]
        for token in stale:
            del self._entries[token]
        return len(stale)

    def __len__(self):
        return len(self._entries)
