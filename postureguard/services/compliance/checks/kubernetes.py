from __future__ import annotations

from postureguard.domain.conditions import (
    LkeAuditLogsEnabled,
    LkeControlPlaneAcl,
    LkeControlPlaneHa,
    MinNodeCount,
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


@leaf_check(MinNodeCount)
def check_min_node_count(
    condition: MinNodeCount, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    node_count = resource.specs.get("node_count")
    if node_count is None:
        node_count = len(resource.specs.get("nodes") or []) or 1
    node_count = int(node_count)
    if node_count >= condition.min_count:
        return compliant(f"Cluster has {node_count} node(s).")
    return non_compliant(f"Cluster has {node_count} node(s); minimum required is {condition.min_count}.")


@leaf_check(LkeControlPlaneHa)
def check_control_plane_ha(
    condition: LkeControlPlaneHa, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    if resource.specs.get("high_availability"):
        return compliant("Control plane high availability is enabled for this cluster.")
    return non_compliant(
        "Control plane high availability is not enabled. "
        "Enable HA to keep the API server available during node failures."
    )


@leaf_check(LkeAuditLogsEnabled)
def check_audit_logs(
    condition: LkeAuditLogsEnabled, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    enabled = resource.specs.get("audit_logs_enabled")
    if enabled is None:
        return not_applicable("Audit logs status not available. Re-sync to fetch the latest cluster data.")
    if enabled:
        return compliant("Control plane audit logs are enabled for this cluster.")
    return non_compliant(
        "Control plane audit logs are disabled. Enable audit logging to track API activity."
    )


@leaf_check(LkeControlPlaneAcl)
def check_control_plane_acl(
    condition: LkeControlPlaneAcl, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    # The ingestion side embeds the cluster ACL under specs.control_plane_acl.
    if resource.specs.get("control_plane_acl_supported") is False:
        return not_applicable("This cluster does not support Control Plane ACL.")
    acl = resource.specs.get("control_plane_acl")
    if not isinstance(acl, dict):
        return not_applicable("Control plane ACL data not available. Re-sync to fetch the latest cluster data.")
    if not acl.get("enabled"):
        return non_compliant(
            "Control plane ACL is not enabled. The Kubernetes API server is accessible from any IP."
        )
    addresses = acl.get("addresses") or {}
    ipv4 = [str(ip) for ip in addresses.get("ipv4") or []]
    ipv6 = [str(ip) for ip in addresses.get("ipv6") or []]
    wildcard = [ip for ip in ipv4 if ip == "0.0.0.0/0"] + [ip for ip in ipv6 if ip == "::/0"]
    if wildcard:
        return non_compliant(
            f"Control plane ACL is enabled but allows unrestricted access: {', '.join(wildcard)}. "
            "Remove wildcard entries and restrict to known CIDRs."
        )
    allowed = ", ".join(ipv4 + ipv6) or "no addresses (deny all)"
    return compliant(f"Control plane ACL is enabled and restricted to: {allowed}")
