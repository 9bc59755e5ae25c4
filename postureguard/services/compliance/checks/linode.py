from __future__ import annotations

from datetime import datetime, timezone
import re

from postureguard.domain.conditions import (
    LinodeBackupRecency,
    LinodeBackupsEnabled,
    LinodeDiskEncryption,
    LinodeLockConfigured,
    LinodeNotOffline,
    LinodePlanTierByTag,
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


_PLAN_GENERATION = re.compile(r"^g\d+-")
_PLAN_SIZE = re.compile(r"-\d+$")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def plan_tier(plan_type: str | None) -> str:
    # "g6-dedicated-4" -> "dedicated"
    return _PLAN_SIZE.sub("", _PLAN_GENERATION.sub("", plan_type or ""))


@leaf_check(LinodeBackupsEnabled)
def check_backups_enabled(
    condition: LinodeBackupsEnabled, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    enabled = resource.specs.get("backups_enabled")
    if enabled is None:
        return not_applicable("Backup status not available. Re-sync to fetch the latest instance data.")
    if enabled:
        return compliant("Backups are enabled for this Linode.")
    return non_compliant("Backups are not enabled for this Linode.")


@leaf_check(LinodeBackupRecency)
def check_backup_recency(
    condition: LinodeBackupRecency, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    if not resource.specs.get("backups_enabled"):
        return non_compliant("Backups are not enabled for this Linode, so no recent recovery point exists.")
    last_successful = resource.specs.get("backups_last_successful")
    if not last_successful:
        return non_compliant(
            "Backups are enabled but no successful backup has been recorded yet. Re-sync to refresh data."
        )
    last_backup = _parse_timestamp(str(last_successful))
    age_hours = (context.now - last_backup).total_seconds() / 3600
    age_days = age_hours / 24
    when = last_backup.strftime("%Y-%m-%d")
    age = f"{round(age_hours)}h ago" if age_hours < 24 else f"{round(age_days)} day(s) ago"
    if age_days <= condition.max_age_days:
        return compliant(
            f"Last successful backup was {age} ({when}), within the {condition.max_age_days}-day window."
        )
    return non_compliant(
        f"Last successful backup was {round(age_days)} day(s) ago ({when}), "
        f"which exceeds the required {condition.max_age_days}-day window."
    )


@leaf_check(LinodeDiskEncryption)
def check_disk_encryption(
    condition: LinodeDiskEncryption, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    encryption = resource.specs.get("disk_encryption")
    if encryption is None:
        return not_applicable("Disk encryption status not available. Re-sync to fetch the latest instance data.")
    if encryption == "enabled":
        return compliant("Disk encryption is enabled for this Linode.")
    return non_compliant(f'Disk encryption is "{encryption}". It must be set to "enabled".')


@leaf_check(LinodeLockConfigured)
def check_lock_configured(
    condition: LinodeLockConfigured, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    locks = [str(lock) for lock in resource.specs.get("locks") or []]
    required = condition.required_lock_types
    if not locks:
        if required:
            return non_compliant(f"No lock configured. Required: {', '.join(required)}.")
        return non_compliant("No deletion lock is configured for this Linode.")
    if required:
        missing = [lock_type for lock_type in required if lock_type not in locks]
        if missing:
            return non_compliant(
                f"Lock(s) present ({', '.join(locks)}) but missing required type(s): {', '.join(missing)}."
            )
        return compliant(f"Required lock(s) configured: {', '.join(locks)}.")
    return compliant(f"Deletion lock is configured: {', '.join(locks)}.")


@leaf_check(LinodeNotOffline)
def check_not_offline(
    condition: LinodeNotOffline, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    status = resource.specs.get("status") or resource.status
    if not status:
        return not_applicable("Instance status not available. Re-sync to fetch the latest data.")
    if status == "offline":
        return non_compliant("Linode is offline.")
    return compliant(f'Linode status is "{status}".')


@leaf_check(LinodePlanTierByTag)
def check_plan_tier_by_tag(
    condition: LinodePlanTierByTag, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    tag_key = condition.tag.lower()
    tag_value = condition.tag_value.lower()
    if not tag_key or not condition.approved_tiers:
        return not_applicable("Rule is not fully configured (tag key or approved tiers missing).")
    wanted = f"{tag_key}:{tag_value}" if tag_value else tag_key
    matched = False
    for tag in resource.tags:
        lowered = tag.lower()
        if tag_value:
            matched = lowered == wanted
        else:
            matched = lowered == tag_key or lowered.startswith(f"{tag_key}:")
        if matched:
            break
    if not matched:
        return not_applicable(f'Linode does not have the tag "{wanted}", so the rule does not apply.')
    tier = plan_tier(resource.plan_type)
    approved = ", ".join(condition.approved_tiers)
    if any(tier.startswith(candidate) for candidate in condition.approved_tiers):
        return compliant(f'Plan "{resource.plan_type}" (tier: {tier}) is in the approved tiers: {approved}.')
    return non_compliant(
        f'Plan "{resource.plan_type}" (tier: {tier}) is not in the approved tiers: {approved}. '
        f"Upgrade to a {' or '.join(condition.approved_tiers)} instance."
    )
