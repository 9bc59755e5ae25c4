from __future__ import annotations

from typing import Any, Iterable

from postureguard.domain.conditions import (
    FirewallAllPortsAllowed,
    FirewallAttached,
    FirewallHasTargets,
    FirewallNoDuplicateRules,
    FirewallRfc1918Lateral,
    FirewallRuleDescriptions,
    FirewallRulesCheck,
    NoOpenInbound,
)
from postureguard.services.compliance.registry import leaf_check
from postureguard.services.compliance.verdicts import (
    EvaluationContext,
    ResourceRecord,
    Verdict,
    compliant,
    non_compliant,
    not_applicable,
)


_OPEN_IPV4 = {"0.0.0.0/0"}
_OPEN_IPV6 = {"::/0", "2000::/3"}
_SKIP_ALL_PORT_PROTOCOLS = {"ICMP", "IPENCAP"}


def _rule_label(rule: dict[str, Any]) -> str:
    return rule.get("label") or "unnamed"


def _addresses(rule: dict[str, Any]) -> tuple[list[str], list[str]]:
    addresses = rule.get("addresses") or {}
    return list(addresses.get("ipv4") or []), list(addresses.get("ipv6") or [])


def _is_open_to_all(rule: dict[str, Any]) -> bool:
    ipv4, ipv6 = _addresses(rule)
    return bool(_OPEN_IPV4.intersection(ipv4) or _OPEN_IPV6.intersection(ipv6))


def _accepts_tcp(rule: dict[str, Any]) -> bool:
    if str(rule.get("action") or "").upper() != "ACCEPT":
        return False
    return str(rule.get("protocol") or "").upper() in {"TCP", "ALL"}


def port_matches(port: int, protocol: str, ports: str | None) -> bool:
    # An ALL-protocol rule or an empty port spec covers every port.
    if protocol.upper() == "ALL" or not (ports or "").strip():
        return True
    for segment in (ports or "").split(","):
        segment = segment.strip()
        if not segment:
            continue
        if "-" in segment:
            low, _, high = segment.partition("-")
            try:
                if int(low) <= port <= int(high):
                    return True
            except ValueError:
                continue
        else:
            try:
                if int(segment) == port:
                    return True
            except ValueError:
                continue
    return False


def _inbound_rules(specs: Any) -> list[dict[str, Any]]:
    return [rule for rule in (specs or {}).get("inbound_rules_detail") or [] if isinstance(rule, dict)]


def _outbound_rules(specs: Any) -> list[dict[str, Any]]:
    return [rule for rule in (specs or {}).get("outbound_rules_detail") or [] if isinstance(rule, dict)]


def _same_id(left: Any, right: Any) -> bool:
    return left is not None and right is not None and str(left) == str(right)


def firewalls_protecting(resource: ResourceRecord, context: EvaluationContext) -> list[ResourceRecord | dict[str, Any]]:
    # Direct attachments on the Linode plus firewalls listing the Linode as an entity.
    direct = [fw for fw in resource.specs.get("attached_firewalls") or [] if isinstance(fw, dict)]
    protecting: list[ResourceRecord | dict[str, Any]] = []
    known = {str(fw.get("id")) for fw in direct}
    for attachment in direct:
        match = next(
            (fw for fw in context.resources_of("firewall") if _same_id(fw.resource_id, attachment.get("id"))),
            None,
        )
        protecting.append(match if match is not None else attachment)
    for firewall in context.resources_of("firewall"):
        if firewall.resource_id in known:
            continue
        entities = firewall.specs.get("entities") or []
        if any(isinstance(entity, dict) and _same_id(entity.get("id"), resource.resource_id) for entity in entities):
            protecting.append(firewall)
    return protecting


def _firewall_label(firewall: ResourceRecord | dict[str, Any]) -> str:
    if isinstance(firewall, ResourceRecord):
        return firewall.label
    return str(firewall.get("label") or firewall.get("id") or "unnamed")


@leaf_check(FirewallAttached)
def check_firewall_attached(
    condition: FirewallAttached, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    firewalls = firewalls_protecting(resource, context)
    if not firewalls:
        return non_compliant("No firewall is attached to this Linode.")
    return compliant(f"Protected by firewall: {', '.join(_firewall_label(fw) for fw in firewalls)}")


@leaf_check(FirewallHasTargets)
def check_firewall_has_targets(
    condition: FirewallHasTargets, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    count = resource.specs.get("entity_count")
    if count is None:
        count = len(resource.specs.get("entities") or [])
    if int(count) > 0:
        return compliant(f"Attached to {count} Linode(s).")
    return non_compliant("Firewall has no attached Linodes.")


@leaf_check(NoOpenInbound)
def check_no_open_inbound(
    condition: NoOpenInbound, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    inbound = _inbound_rules(resource.specs)
    violations: list[str] = []
    for rule in inbound:
        if not _accepts_tcp(rule) or not _is_open_to_all(rule):
            continue
        protocol = str(rule.get("protocol") or "")
        for port in condition.sensitive_ports:
            if port_matches(port, protocol, rule.get("ports")):
                violations.append(f"Port {port} open to all (rule: {_rule_label(rule)})")
    if violations:
        return non_compliant("; ".join(violations))
    if str(resource.specs.get("inbound_policy") or "").upper() == "ACCEPT" and not inbound:
        return non_compliant("Inbound policy is ACCEPT with no rules, so all traffic is allowed.")
    return compliant("No unrestricted inbound access detected.")


@leaf_check(FirewallRulesCheck)
def check_firewall_rules(
    condition: FirewallRulesCheck, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    firewalls = [fw for fw in firewalls_protecting(resource, context) if isinstance(fw, ResourceRecord)]
    if not firewalls:
        return non_compliant("No firewall is attached to this Linode.")
    violations: list[str] = []
    for firewall in firewalls:
        specs = firewall.specs
        name = firewall.label
        inbound_policy = str(specs.get("inbound_policy") or "ACCEPT").upper()
        outbound_policy = str(specs.get("outbound_policy") or "ACCEPT").upper()
        if condition.required_inbound_policy and inbound_policy != condition.required_inbound_policy.upper():
            violations.append(
                f'Firewall "{name}": inbound policy is {inbound_policy}, '
                f"expected {condition.required_inbound_policy.upper()}"
            )
        if condition.required_outbound_policy and outbound_policy != condition.required_outbound_policy.upper():
            violations.append(
                f'Firewall "{name}": outbound policy is {outbound_policy}, '
                f"expected {condition.required_outbound_policy.upper()}"
            )
        for rule in _inbound_rules(specs):
            if not _accepts_tcp(rule):
                continue
            protocol = str(rule.get("protocol") or "")
            open_to_all = _is_open_to_all(rule)
            for port in condition.blocked_ports:
                if port_matches(port, protocol, rule.get("ports")):
                    violations.append(
                        f'Firewall "{name}": port {port} is allowed inbound (rule: {_rule_label(rule)})'
                    )
            if condition.require_no_open_ports and open_to_all:
                violations.append(
                    f'Firewall "{name}": rule "{_rule_label(rule)}" allows unrestricted inbound traffic'
                )
            if condition.allowed_source_ips and not open_to_all:
                ipv4, ipv6 = _addresses(rule)
                if any(ip not in condition.allowed_source_ips for ip in ipv4 + ipv6):
                    violations.append(
                        f'Firewall "{name}": rule "{_rule_label(rule)}" allows traffic from IPs '
                        "not in the allowed list"
                    )
    if violations:
        return non_compliant("; ".join(violations))
    return compliant(f"Firewall rules compliant ({', '.join(fw.label for fw in firewalls)})")


def _is_rfc1918(cidr: str) -> bool:
    if cidr.startswith("10.") or cidr.startswith("192.168."):
        return True
    if cidr.startswith("172."):
        try:
            second = int(cidr.split(".")[1])
        except (IndexError, ValueError):
            return False
        return 16 <= second <= 31
    return False


@leaf_check(FirewallRfc1918Lateral)
def check_rfc1918_lateral(
    condition: FirewallRfc1918Lateral, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    inbound = _inbound_rules(resource.specs)
    violations: list[str] = []
    for rule in inbound:
        if not _accepts_tcp(rule):
            continue
        ipv4, _ipv6 = _addresses(rule)
        private_sources = [cidr for cidr in ipv4 if _is_rfc1918(cidr)]
        if not private_sources:
            continue
        protocol = str(rule.get("protocol") or "")
        for port in condition.sensitive_ports:
            if port_matches(port, protocol, rule.get("ports")):
                violations.append(
                    f'Rule "{_rule_label(rule)}": port {port} accepts traffic from private range(s) '
                    f"{', '.join(private_sources)}"
                )
    if violations:
        return non_compliant(f"Potential lateral movement: {'; '.join(violations)}.")
    if not inbound:
        return not_applicable("No inbound rules to evaluate.")
    return compliant("No inbound rules accept RFC-1918 traffic on sensitive ports.")


@leaf_check(FirewallRuleDescriptions)
def check_rule_descriptions(
    condition: FirewallRuleDescriptions, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    rules = _inbound_rules(resource.specs) + _outbound_rules(resource.specs)
    if not rules:
        return not_applicable("No rules to evaluate.")
    undescribed = [rule for rule in rules if not str(rule.get("description") or "").strip()]
    if undescribed:
        labels = ", ".join(f'"{_rule_label(rule)}"' for rule in undescribed)
        noun = "rules are" if len(undescribed) != 1 else "rule is"
        return non_compliant(f"{len(undescribed)} {noun} missing a description: {labels}.")
    return compliant(f"All {len(rules)} rule(s) have descriptions set.")


def _fingerprint(rule: dict[str, Any]) -> tuple[str, ...]:
    ipv4, ipv6 = _addresses(rule)
    return (
        str(rule.get("action") or "").upper(),
        str(rule.get("protocol") or "").upper(),
        str(rule.get("ports") or ""),
        ",".join(sorted(ipv4)),
        ",".join(sorted(ipv6)),
    )


def _duplicates(rules: Iterable[dict[str, Any]], direction: str) -> list[str]:
    seen: dict[tuple[str, ...], str] = {}
    found: list[str] = []
    for rule in rules:
        key = _fingerprint(rule)
        if key in seen:
            found.append(f'{direction} rule "{_rule_label(rule)}" is identical to "{seen[key]}"')
        else:
            seen[key] = _rule_label(rule)
    return found


@leaf_check(FirewallNoDuplicateRules)
def check_no_duplicate_rules(
    condition: FirewallNoDuplicateRules, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    inbound = _inbound_rules(resource.specs)
    outbound = _outbound_rules(resource.specs)
    if not inbound and not outbound:
        return not_applicable("No rules to evaluate.")
    duplicates = _duplicates(inbound, "Inbound") + _duplicates(outbound, "Outbound")
    if duplicates:
        return non_compliant(f"Duplicate rules detected: {'; '.join(duplicates)}.")
    return compliant(f"No duplicate rules found across {len(inbound) + len(outbound)} rule(s).")


def _allows_all_ports(rule: dict[str, Any]) -> bool:
    protocol = str(rule.get("protocol") or "").upper()
    if protocol in _SKIP_ALL_PORT_PROTOCOLS:
        return False
    if protocol == "ALL":
        return True
    ports = str(rule.get("ports") or "").strip()
    return ports in {"", "1-65535"}


@leaf_check(FirewallAllPortsAllowed)
def check_all_ports_allowed(
    condition: FirewallAllPortsAllowed, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    actions = {action.upper() for action in condition.actions}
    checked: list[tuple[str, dict[str, Any]]] = []
    if condition.check_inbound:
        checked.extend(("Inbound", rule) for rule in _inbound_rules(resource.specs))
    if condition.check_outbound:
        checked.extend(("Outbound", rule) for rule in _outbound_rules(resource.specs))
    if not checked:
        return not_applicable("No rules to evaluate.")
    violations = [
        f'{direction} rule "{_rule_label(rule)}": allows all ports '
        f'(protocol: {str(rule.get("protocol") or "ALL").upper()}, ports: "{rule.get("ports") or "any"}")'
        for direction, rule in checked
        if str(rule.get("action") or "").upper() in actions and _allows_all_ports(rule)
    ]
    if violations:
        return non_compliant("; ".join(violations))
    return compliant(f"No rules allow all ports across {len(checked)} rule(s) checked.")
