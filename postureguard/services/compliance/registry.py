from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from postureguard.domain.conditions import ConditionConfig
from postureguard.services.compliance.verdicts import EvaluationContext, ResourceRecord, Verdict


LeafFn = Callable[[ConditionConfig, ResourceRecord | None, EvaluationContext], Verdict]


@dataclass(frozen=True)
class ConditionSpec:
    condition_type: str
    config_model: type[ConditionConfig]
    evaluator: LeafFn

    @property
    def applies_to(self) -> frozenset[str] | None:
        return self.config_model.applies_to

    @property
    def account_wide(self) -> bool:
        return self.config_model.applies_to is None


_REGISTRY: dict[type[ConditionConfig], ConditionSpec] = {}


def leaf_check(config_model: type[ConditionConfig]) -> Callable[[LeafFn], LeafFn]:
    # Register one pure check per typed condition variant.
    def _decorator(fn: LeafFn) -> LeafFn:
        condition_type = config_model.model_fields["condition_type"].default
        if config_model in _REGISTRY:
            raise RuntimeError(f"Duplicate leaf check for {condition_type}")
        _REGISTRY[config_model] = ConditionSpec(
            condition_type=condition_type,
            config_model=config_model,
            evaluator=fn,
        )
        return fn

    return _decorator


def spec_for(config_model: type[ConditionConfig]) -> ConditionSpec | None:
    return _REGISTRY.get(config_model)


def registered_specs() -> list[ConditionSpec]:
    return sorted(_REGISTRY.values(), key=lambda spec: spec.condition_type)
