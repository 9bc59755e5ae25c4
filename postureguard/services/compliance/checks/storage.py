from __future__ import annotations

from postureguard.domain.conditions import (
    BucketAclCheck,
    BucketCorsCheck,
    VolumeAttached,
    VolumeEncryptionEnabled,
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


@leaf_check(VolumeAttached)
def check_volume_attached(
    condition: VolumeAttached, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    linode_id = resource.specs.get("linode_id")
    if linode_id:
        return compliant(f"Attached to Linode ID {linode_id}.")
    return non_compliant("Volume is not attached to any Linode.")


@leaf_check(VolumeEncryptionEnabled)
def check_volume_encryption(
    condition: VolumeEncryptionEnabled, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    encryption = resource.specs.get("encryption")
    if encryption is None:
        return not_applicable("Encryption status not available. Re-sync to fetch the latest volume data.")
    if encryption == "enabled":
        return compliant("Disk encryption is enabled for this volume.")
    return non_compliant(
        f'Disk encryption is "{encryption}". It must be set to "enabled" to protect data at rest.'
    )


@leaf_check(BucketAclCheck)
def check_bucket_acl(
    condition: BucketAclCheck, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    acl = resource.specs.get("acl")
    if acl is None:
        return not_applicable("ACL data not available. Re-sync resources to fetch bucket access settings.")
    if condition.required_acl and acl != condition.required_acl:
        return non_compliant(f'Bucket ACL is "{acl}", expected "{condition.required_acl}".')
    if acl in condition.forbidden_acls:
        return non_compliant(f'Bucket ACL is "{acl}", which is not permitted.')
    return compliant(f'Bucket ACL is "{acl}".')


@leaf_check(BucketCorsCheck)
def check_bucket_cors(
    condition: BucketCorsCheck, resource: ResourceRecord | None, context: EvaluationContext
) -> Verdict:
    cors_enabled = resource.specs.get("cors_enabled")
    if cors_enabled is None:
        return not_applicable("CORS data not available. Re-sync resources to fetch bucket access settings.")
    if condition.require_cors_disabled and cors_enabled:
        return non_compliant("CORS is enabled on this bucket; it must be disabled.")
    if condition.require_cors_enabled and not cors_enabled:
        return non_compliant("CORS is disabled on this bucket; it must be enabled.")
    return compliant(f"CORS is {'enabled' if cors_enabled else 'disabled'}.")
