from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from postureguard.services.scoring import ResourceTimeline, ScoreTimeline


T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _score_row(run_id: str, hours: int, score: int | None, compliant: int, non_compliant: int):
    return SimpleNamespace(
        run_id=run_id,
        evaluated_at=T0 + timedelta(hours=hours),
        compliance_score=score,
        compliant_count=compliant,
        non_compliant_count=non_compliant,
        not_applicable_count=0,
        acknowledged_count=0,
        total_results=compliant + non_compliant,
    )


def _resource_row(run_id: str, hours: int, statuses: dict[str, str]):
    return SimpleNamespace(
        run_id=run_id,
        evaluated_at=T0 + timedelta(hours=hours),
        results=[{"rule_id": rule_id, "rule_name": rule_id.upper(), "status": status} for rule_id, status in statuses.items()],
    )


def test_score_timeline_sorts_frames() -> None:
    timeline = ScoreTimeline.from_history(
        [_score_row("run-2", 2, 50, 1, 1), _score_row("run-1", 1, 100, 2, 0)]
    )
    assert [frame.run_id for frame in timeline] == ["run-1", "run-2"]
    assert timeline.latest().run_id == "run-2"
    assert len(timeline) == 2


def test_score_timeline_scrubs_to_last_frame_at_or_before() -> None:
    timeline = ScoreTimeline.from_history(
        [_score_row("run-1", 1, 100, 2, 0), _score_row("run-2", 3, 50, 1, 1)]
    )
    assert timeline.index_at(T0) is None
    assert timeline.at(T0 + timedelta(hours=1)).run_id == "run-1"
    assert timeline.at(T0 + timedelta(hours=2)).run_id == "run-1"
    assert timeline.at(T0 + timedelta(days=1)).run_id == "run-2"
    # Naive timestamps are read as UTC.
    assert timeline.index_at(datetime(2026, 1, 1, 3)) == 1


def test_score_timeline_changes_between() -> None:
    timeline = ScoreTimeline.from_history(
        [_score_row("run-1", 1, 100, 2, 0), _score_row("run-2", 2, 50, 1, 1), _score_row("run-3", 3, None, 0, 0)]
    )
    assert timeline.changes_between(0, 1) == {
        "score": -50,
        "compliant": -1,
        "non_compliant": 1,
        "not_applicable": 0,
        "acknowledged": 0,
    }
    assert timeline.changes_between(1, 2)["score"] is None


def test_resource_timeline_transitions_skip_unchanged_frames() -> None:
    timeline = ResourceTimeline.from_history(
        [
            _resource_row("run-1", 1, {"r1": "compliant", "r2": "non_compliant"}),
            _resource_row("run-2", 2, {"r1": "compliant", "r2": "non_compliant"}),
            _resource_row("run-3", 3, {"r1": "non_compliant", "r3": "compliant"}),
        ]
    )
    transitions = timeline.transitions()
    assert len(transitions) == 1
    assert transitions[0]["evaluated_at"] == T0 + timedelta(hours=3)
    changes = {change["rule_id"]: change for change in transitions[0]["changes"]}
    assert changes["r1"]["from"] == "compliant" and changes["r1"]["to"] == "non_compliant"
    assert changes["r2"]["to"] is None
    assert changes["r3"]["from"] is None
    assert changes["r3"]["rule_name"] == "R3"


def test_empty_timeline() -> None:
    timeline = ScoreTimeline.from_history([])
    assert timeline.latest() is None
    assert timeline.at(T0) is None
