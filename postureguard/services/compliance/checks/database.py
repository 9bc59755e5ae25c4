from __future__ import annotations

from postureguard.domain.conditions import DbAllowlistCheck, DbPublicAccess
from postureguard.services.compliance.registry import leaf_check
from postureguard.services.compliance.verdicts import (
    EvaluationContext,
    ResourceRecord,
    Verdict,
    compliant,
    non_compliant,
    not_applicable,
)


@leaf_check(DbPublicAccess)
def check_public_access(
    condition: DbPublicAccess, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    public_access = resource.specs.get("public_access")
    if public_access is None:
        return not_applicable("Public access data not available. Re-sync to fetch the latest database settings.")
    if not public_access:
        return compliant("Database does not have public access enabled.")
    if condition.allow_public_access:
        return compliant("Database has public access enabled (permitted by rule configuration).")
    return non_compliant("Database has public access enabled; it is reachable outside the VPC.")


@leaf_check(DbAllowlistCheck)
def check_allowlist(
    condition: DbAllowlistCheck, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    allow_list = resource.specs.get("allow_list")
    if allow_list is None:
        return not_applicable("Allow list data not available. Re-sync to fetch the latest database settings.")
    entries = [str(cidr) for cidr in allow_list]
    violations: list[str] = []
    if condition.require_non_empty and not entries:
        violations.append("Allow list is empty, so all IPs are permitted by default.")
    violations.extend(
        f'Unrestricted CIDR "{cidr}" is in the allow list.' for cidr in entries if cidr in condition.forbidden_cidrs
    )
    if violations:
        return non_compliant(" ".join(violations))
    if not entries:
        return compliant("Allow list is empty (access restricted by default for this database).")
    return compliant(f"Allow list contains {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}: {', '.join(entries)}.")
