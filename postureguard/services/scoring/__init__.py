from __future__ import annotations

from postureguard.services.scoring.aggregation import (
    DIMENSIONS,
    DrillDownGroup,
    ScoreTally,
    ScoreTrend,
    compute_score,
    drill_down,
    rule_breakdown,
    score_trend,
    tally,
)
from postureguard.services.scoring.timeline import ResourceTimeline, ScoreTimeline


__all__ = [
    "DIMENSIONS",
    "DrillDownGroup",
    "ResourceTimeline",
    "ScoreTally",
    "ScoreTimeline",
    "ScoreTrend",
    "compute_score",
    "drill_down",
    "rule_breakdown",
    "score_trend",
    "tally",
]
