from __future__ import annotations

from postureguard.services.compliance.activation import (
    ActivationDecision,
    ActivationPlan,
    resolve_activation,
    resolve_active_rules,
)
from postureguard.services.compliance.composite import (
    combine_and,
    combine_or,
    evaluation_order,
    if_then,
    negate,
    resolve_composite,
    validate_composite_config,
)
from postureguard.services.compliance.leaf import evaluate_condition, evaluate_leaf
from postureguard.services.compliance.verdicts import (
    STATUS_COMPLIANT,
    STATUS_NON_COMPLIANT,
    STATUS_NOT_APPLICABLE,
    EvaluationContext,
    ResourceRecord,
    Verdict,
)


__all__ = [
    "ActivationDecision",
    "ActivationPlan",
    "EvaluationContext",
    "ResourceRecord",
    "STATUS_COMPLIANT",
    "STATUS_NON_COMPLIANT",
    "STATUS_NOT_APPLICABLE",
    "Verdict",
    "combine_and",
    "combine_or",
    "evaluate_condition",
    "evaluate_leaf",
    "evaluation_order",
    "if_then",
    "negate",
    "resolve_activation",
    "resolve_active_rules",
    "resolve_composite",
    "validate_composite_config",
]
