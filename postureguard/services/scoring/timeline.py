from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ScoreFrame:
    run_id: str
    evaluated_at: datetime
    score: int | None
    compliant: int
    non_compliant: int
    not_applicable: int
    acknowledged: int
    total: int


@dataclass(frozen=True)
class ResourceFrame:
    run_id: str
    evaluated_at: datetime
    results: tuple[dict[str, Any], ...]

    def statuses(self) -> dict[str, str]:
        return {str(entry.get("rule_id")): str(entry.get("status")) for entry in self.results}


class _Timeline:
    """Immutable, time-ordered sequence of frames.

    Frames are sorted once at construction; lookups never mutate state.
    """

    _frames: tuple[Any, ...]

    def __init__(self, frames: Iterable[Any]) -> None:
        self._frames = tuple(sorted(frames, key=lambda frame: frame.evaluated_at))
        self._stamps = tuple(frame.evaluated_at for frame in self._frames)

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self):
        return iter(self._frames)

    def __getitem__(self, index: int) -> Any:
        return self._frames[index]

    @property
    def frames(self) -> tuple[Any, ...]:
        return self._frames

    def frame(self, index: int) -> Any:
        return self._frames[index]

    def latest(self) -> Any | None:
        return self._frames[-1] if self._frames else None

    def index_at(self, timestamp: datetime) -> int | None:
        # Index of the last frame at or before ``timestamp``.
        position = bisect_right(self._stamps, _as_utc(timestamp))
        return position - 1 if position > 0 else None

    def at(self, timestamp: datetime) -> Any | None:
        index = self.index_at(timestamp)
        return self._frames[index] if index is not None else None


class ScoreTimeline(_Timeline):
    @classmethod
    def from_history(cls, rows: Iterable[Any]) -> "ScoreTimeline":
        return cls(
            ScoreFrame(
                run_id=row.run_id,
                evaluated_at=_as_utc(row.evaluated_at),
                score=row.compliance_score,
                compliant=row.compliant_count,
                non_compliant=row.non_compliant_count,
                not_applicable=row.not_applicable_count,
                acknowledged=row.acknowledged_count,
                total=row.total_results,
            )
            for row in rows
        )

    def changes_between(self, start: int, end: int) -> dict[str, int | None]:
        before = self._frames[start]
        after = self._frames[end]
        return {
            "score": None if before.score is None or after.score is None else after.score - before.score,
            "compliant": after.compliant - before.compliant,
            "non_compliant": after.non_compliant - before.non_compliant,
            "not_applicable": after.not_applicable - before.not_applicable,
            "acknowledged": after.acknowledged - before.acknowledged,
        }


class ResourceTimeline(_Timeline):
    @classmethod
    def from_history(cls, rows: Iterable[Any]) -> "ResourceTimeline":
        return cls(
            ResourceFrame(
                run_id=row.run_id,
                evaluated_at=_as_utc(row.evaluated_at),
                results=tuple(dict(entry) for entry in (row.results or [])),
            )
            for row in rows
        )

    def changes_between(self, start: int, end: int) -> list[dict[str, Any]]:
        # Per-rule status transitions between two frames; rules appearing or vanishing map to None.
        before = self._frames[start]
        after = self._frames[end]
        names = {
            str(entry.get("rule_id")): entry.get("rule_name")
            for entry in (*before.results, *after.results)
        }
        before_statuses = before.statuses()
        after_statuses = after.statuses()
        changes: list[dict[str, Any]] = []
        for rule_id in sorted(set(before_statuses) | set(after_statuses)):
            old = before_statuses.get(rule_id)
            new = after_statuses.get(rule_id)
            if old != new:
                changes.append({"rule_id": rule_id, "rule_name": names.get(rule_id), "from": old, "to": new})
        return changes

    def transitions(self) -> list[dict[str, Any]]:
        # Every consecutive pair of frames that changed, newest last.
        transitions: list[dict[str, Any]] = []
        for index in range(1, len(self._frames)):
            changes = self.changes_between(index - 1, index)
            if changes:
                transitions.append({"evaluated_at": self._frames[index].evaluated_at, "changes": changes})
        return transitions


def window(frames: Sequence[Any], start: datetime | None, end: datetime | None) -> list[Any]:
    lower = _as_utc(start) if start is not None else None
    upper = _as_utc(end) if end is not None else None
    return [
        frame
        for frame in frames
        if (lower is None or frame.evaluated_at >= lower) and (upper is None or frame.evaluated_at <= upper)
    ]
