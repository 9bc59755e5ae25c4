from __future__ import annotations

from typing import Any

from postureguard.domain.conditions import NodebalancerPortAllowlist, NodebalancerProtocolCheck
from postureguard.services.compliance.registry import leaf_check
from postureguard.services.compliance.verdicts import (
    EvaluationContext,
    ResourceRecord,
    Verdict,
    compliant,
    non_compliant,
    not_applicable,
)


_NO_CONFIGS = "No port configurations found. Re-sync to fetch the latest NodeBalancer data."


def _port_configs(resource: ResourceRecord) -> list[dict[str, Any]]:
    return [cfg for cfg in resource.specs.get("configs") or [] if isinstance(cfg, dict)]


@leaf_check(NodebalancerProtocolCheck)
def check_protocols(
    condition: NodebalancerProtocolCheck, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    configs = _port_configs(resource)
    if not configs:
        return not_applicable(_NO_CONFIGS)
    allowed = [protocol.lower() for protocol in condition.allowed_protocols]
    forbidden = [protocol.lower() for protocol in condition.forbidden_protocols]
    violations: list[str] = []
    for cfg in configs:
        protocol = str(cfg.get("protocol") or "").lower()
        if forbidden and protocol in forbidden:
            violations.append(f'Port {cfg.get("port")} uses forbidden protocol "{protocol}"')
        elif allowed and protocol not in allowed:
            violations.append(
                f'Port {cfg.get("port")} uses disallowed protocol "{protocol}" (allowed: {", ".join(allowed)})'
            )
    if violations:
        return non_compliant("; ".join(violations) + ".")
    summary = ", ".join(f"port {cfg.get('port')} ({cfg.get('protocol')})" for cfg in configs)
    return compliant(f"All port configurations use compliant protocols: {summary}.")


@leaf_check(NodebalancerPortAllowlist)
def check_port_allowlist(
    condition: NodebalancerPortAllowlist, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    configs = _port_configs(resource)
    if not configs:
        return not_applicable(_NO_CONFIGS)
    if not condition.allowed_ports:
        return not_applicable("No allowed ports configured for this rule.")
    allowed = ", ".join(str(port) for port in condition.allowed_ports)
    violations = [
        f"Port {cfg.get('port')} is not in the allowed list"
        for cfg in configs
        if cfg.get("port") not in condition.allowed_ports
    ]
    if violations:
        return non_compliant(f"{'; '.join(violations)}. Allowed: {allowed}.")
    ports = ", ".join(str(cfg.get("port")) for cfg in configs)
    return compliant(f"All configured ports ({ports}) are in the allowed list.")
