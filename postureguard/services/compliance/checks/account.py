from __future__ import annotations

from typing import Any

from postureguard.domain.conditions import LoginAllowedIps, TfaUsers
from postureguard.services.compliance.registry import leaf_check
from postureguard.services.compliance.verdicts import (
    EvaluationContext,
    ResourceRecord,
    Verdict,
    compliant,
    non_compliant,
    not_applicable,
)


def _records(context: EvaluationContext, key: str) -> list[dict[str, Any]] | None:
    raw = context.settings.get(key)
    if raw is None:
        return None
    return [item for item in raw if isinstance(item, dict)]


@leaf_check(TfaUsers)
def check_tfa_users(condition: TfaUsers, resource: ResourceRecord | None, context: EvaluationContext) -> Verdict:
    users = _records(context, "users")
    if users is None:
        return not_applicable("User data not available. Sync account settings to check TFA status.")
    in_scope = [user for user in users if user.get("user_type") not in condition.exclude_user_types]
    if not in_scope:
        return not_applicable("No users found to evaluate.")
    without_tfa = [str(user.get("username") or "unknown") for user in in_scope if user.get("tfa_enabled") is not True]
    if without_tfa:
        return non_compliant(f"Users without TFA enabled: {', '.join(without_tfa)}.")
    return compliant(f"All {len(in_scope)} user(s) have TFA enabled.")


@leaf_check(LoginAllowedIps)
def check_login_allowed_ips(
    condition: LoginAllowedIps, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    if not condition.allowed_ips:
        return not_applicable("No allowed IPs configured for this rule.")
    logins = _records(context, "logins")
    if not logins:
        return not_applicable("No login history found to evaluate.")
    unexpected = [
        f"{login.get('username') or 'unknown'} from {login.get('ip') or 'unknown'}"
        + (f" at {login['datetime']}" if login.get("datetime") else "")
        for login in logins
        if (login.get("ip") or "unknown") not in condition.allowed_ips
    ]
    if unexpected:
        return non_compliant(f"Logins from unexpected IPs: {'; '.join(unexpected)}.")
    return compliant(f"All {len(logins)} login(s) came from allowed IPs.")
