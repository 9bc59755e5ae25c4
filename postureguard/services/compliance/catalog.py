from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.conditions import parse_condition
from postureguard.domain.models import ComplianceProfile, ComplianceRule


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuiltinRule:
    condition_type: str
    name: str
    description: str
    severity: str
    resource_types: tuple[str, ...]
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def rule_id(self) -> str:
        return builtin_rule_id(self.condition_type)


@dataclass(frozen=True)
class BuiltinProfile:
    slug: str
    name: str
    description: str
    tier: str
    condition_types: tuple[str, ...]
    version: int = 1

    @property
    def profile_id(self) -> str:
        return builtin_profile_id(self.slug)


def builtin_rule_id(condition_type: str) -> str:
    return f"builtin-{condition_type}"


def builtin_profile_id(slug: str) -> str:
    return f"profile-{slug}"


TAGGABLE_TYPES = ("linode", "volume", "nodebalancer", "lke_cluster", "database")
REGIONAL_TYPES = ("linode", "volume", "lke_cluster", "database", "nodebalancer", "bucket")

BUILTIN_RULES: tuple[BuiltinRule, ...] = (
    BuiltinRule(
        "firewall_attached",
        "Linodes must have a firewall",
        "Every Linode instance should be protected by at least one active firewall.",
        "critical",
        ("linode",),
    ),
    BuiltinRule(
        "no_open_inbound",
        "No unrestricted inbound traffic",
        "Firewall rules should not allow inbound access from 0.0.0.0/0 or ::/0 on sensitive ports.",
        "critical",
        ("firewall",),
        {"sensitive_ports": [22, 3389, 3306, 5432, 6379, 27017]},
    ),
    BuiltinRule(
        "firewall_has_targets",
        "Firewall must be attached",
        "A firewall that is not attached to any Linode provides no value.",
        "info",
        ("firewall",),
    ),
    BuiltinRule(
        "firewall_rules_check",
        "Firewall policy requirements",
        "Firewall inbound and outbound policies must meet configurable security requirements.",
        "warning",
        ("linode",),
        {"required_inbound_policy": "DROP"},
    ),
    BuiltinRule(
        "firewall_rfc1918_lateral",
        "No lateral access from private ranges on sensitive ports",
        "Firewalls should not accept traffic from whole RFC1918 ranges on sensitive ports.",
        "warning",
        ("firewall",),
    ),
    BuiltinRule(
        "firewall_rule_descriptions",
        "Every firewall rule must have a description",
        "Descriptions document the purpose of each rule and make firewall reviews possible.",
        "info",
        ("firewall",),
    ),
    BuiltinRule(
        "firewall_no_duplicate_rules",
        "Firewalls must not contain duplicate rules",
        "Duplicate rules hide intent and make firewall changes error prone.",
        "info",
        ("firewall",),
    ),
    BuiltinRule(
        "firewall_all_ports_allowed",
        "Firewall rules must not allow all ports",
        "Detects rules that accept traffic on every port, through protocol ALL, an empty range or 1-65535.",
        "warning",
        ("firewall",),
        {"check_inbound": True, "check_outbound": False, "actions": ["ACCEPT"]},
    ),
    BuiltinRule(
        "min_node_count",
        "LKE clusters should have multiple nodes",
        "Kubernetes clusters should have more than one node for high availability.",
        "warning",
        ("lke_cluster",),
        {"min_count": 2},
    ),
    BuiltinRule(
        "lke_control_plane_ha",
        "LKE control plane high availability",
        "LKE cluster control plane high availability must be enabled for production resilience.",
        "warning",
        ("lke_cluster",),
    ),
    BuiltinRule(
        "lke_audit_logs_enabled",
        "LKE audit logs enabled",
        "LKE control plane audit logging must be enabled to record API server activity.",
        "warning",
        ("lke_cluster",),
    ),
    BuiltinRule(
        "lke_control_plane_acl",
        "LKE control plane ACL configured",
        "The control plane ACL must be enabled and must not allow 0.0.0.0/0 or ::/0.",
        "critical",
        ("lke_cluster",),
    ),
    BuiltinRule(
        "has_tags",
        "Resources should have tags",
        "Resources must carry owner, environment and cost-center tags (format key:value).",
        "info",
        TAGGABLE_TYPES,
        {
            "required_tags": [
                {"key": "owner", "value": "*"},
                {"key": "environment", "value": "*"},
                {"key": "cost-center", "value": "*"},
            ]
        },
    ),
    BuiltinRule(
        "volume_attached",
        "Volumes should be attached",
        "Unattached volumes still incur cost but provide no value.",
        "info",
        ("volume",),
    ),
    BuiltinRule(
        "volume_encryption_enabled",
        "Volume encryption enabled",
        "Block storage volumes must have disk encryption enabled to protect data at rest.",
        "critical",
        ("volume",),
    ),
    BuiltinRule(
        "bucket_acl_check",
        "Object storage bucket ACL",
        "Bucket ACLs must not allow public-read, public-read-write or authenticated-read access.",
        "critical",
        ("bucket",),
    ),
    BuiltinRule(
        "bucket_cors_check",
        "Object storage bucket CORS",
        "Bucket CORS configuration must match the account's policy.",
        "info",
        ("bucket",),
    ),
    BuiltinRule(
        "approved_regions",
        "Resources in approved regions",
        "Resources must be deployed only in approved regions for data sovereignty.",
        "warning",
        REGIONAL_TYPES,
    ),
    BuiltinRule(
        "db_public_access",
        "Databases must not have public access enabled",
        "Databases reachable from outside their VPC increase the attack surface.",
        "critical",
        ("database",),
        {"allow_public_access": False},
    ),
    BuiltinRule(
        "db_allowlist_check",
        "No unrestricted database access",
        "Managed databases must not allow 0.0.0.0/0 or ::/0 in their IP allow list.",
        "critical",
        ("database",),
    ),
    BuiltinRule(
        "linode_backups_enabled",
        "Linode backups enabled",
        "Automated backups must be enabled for every Linode instance.",
        "critical",
        ("linode",),
    ),
    BuiltinRule(
        "linode_backup_recency",
        "Linodes must have a recent successful backup",
        "A successful backup must have completed within the configured window, not just be configured.",
        "warning",
        ("linode",),
        {"max_age_days": 7},
    ),
    BuiltinRule(
        "linode_disk_encryption",
        "Linode disk encryption enabled",
        "Disk encryption protects data at rest on every Linode instance.",
        "critical",
        ("linode",),
    ),
    BuiltinRule(
        "linode_lock_configured",
        "Linode deletion lock configured",
        "At least one deletion lock should protect the instance from accidental deletion.",
        "warning",
        ("linode",),
    ),
    BuiltinRule(
        "linode_not_offline",
        "Linode instance not offline",
        "Offline instances may indicate a failure or an unintended shutdown.",
        "warning",
        ("linode",),
    ),
    BuiltinRule(
        "linode_plan_tier_by_tag",
        "Linode plan tier matches environment tag",
        "Linodes carrying the configured tag must run on an approved plan tier.",
        "info",
        ("linode",),
        {"tag": "environment", "tag_value": "production", "approved_tiers": ["dedicated", "premium"]},
    ),
    BuiltinRule(
        "nodebalancer_protocol_check",
        "NodeBalancer protocol check",
        "NodeBalancer ports must use HTTPS; plain HTTP endpoints are not permitted.",
        "warning",
        ("nodebalancer",),
        {"allowed_protocols": ["https"]},
    ),
    BuiltinRule(
        "nodebalancer_port_allowlist",
        "NodeBalancer allowed ports",
        "NodeBalancers must only listen on approved ports.",
        "warning",
        ("nodebalancer",),
        {"allowed_ports": [443]},
    ),
    BuiltinRule(
        "tfa_users",
        "All users must have TFA enabled",
        "Every user on the account, excluding proxy users, must have two-factor authentication enabled.",
        "critical",
        (),
    ),
    BuiltinRule(
        "login_allowed_ips",
        "Account login IP restriction",
        "Account logins must only come from the configured IP allow list.",
        "warning",
        (),
    ),
)


_CIS_L1 = (
    "firewall_attached",
    "no_open_inbound",
    "linode_backups_enabled",
    "db_allowlist_check",
    "db_public_access",
    "tfa_users",
    "has_tags",
    "volume_attached",
    "lke_control_plane_acl",
)

BUILTIN_PROFILES: tuple[BuiltinProfile, ...] = (
    BuiltinProfile(
        "cis-l1",
        "Level 1 - Foundation",
        "Foundational, low-friction controls every cloud account should satisfy.",
        "foundation",
        _CIS_L1,
    ),
    BuiltinProfile(
        "cis-l2",
        "Level 2 - Standard",
        "Deeper technical controls for production workloads that need defense in depth.",
        "standard",
        (
            "firewall_attached",
            "firewall_rules_check",
            "firewall_has_targets",
            "no_open_inbound",
            "linode_backups_enabled",
            "linode_backup_recency",
            "linode_disk_encryption",
            "linode_lock_configured",
            "volume_encryption_enabled",
            "db_allowlist_check",
            "db_public_access",
            "tfa_users",
            "login_allowed_ips",
            "has_tags",
            "approved_regions",
            "min_node_count",
            "lke_control_plane_ha",
            "lke_control_plane_acl",
            "lke_audit_logs_enabled",
            "bucket_acl_check",
        ),
    ),
    BuiltinProfile(
        "soc2",
        "SOC 2 Readiness",
        "Controls mapped to the SOC 2 Security, Availability and Confidentiality criteria.",
        "standard",
        (
            "firewall_attached",
            "no_open_inbound",
            "linode_backups_enabled",
            "linode_backup_recency",
            "linode_disk_encryption",
            "linode_lock_configured",
            "volume_encryption_enabled",
            "db_allowlist_check",
            "db_public_access",
            "tfa_users",
            "login_allowed_ips",
            "lke_audit_logs_enabled",
            "lke_control_plane_acl",
            "bucket_acl_check",
            "has_tags",
        ),
    ),
    BuiltinProfile(
        "pci-dss",
        "PCI-DSS Baseline",
        "Subset of controls aligned to PCI DSS v4.0 network, configuration, data, access and logging requirements.",
        "strict",
        (
            "firewall_attached",
            "firewall_rules_check",
            "no_open_inbound",
            "linode_backups_enabled",
            "linode_backup_recency",
            "linode_disk_encryption",
            "linode_lock_configured",
            "volume_encryption_enabled",
            "db_allowlist_check",
            "db_public_access",
            "tfa_users",
            "login_allowed_ips",
            "approved_regions",
            "lke_control_plane_ha",
            "lke_control_plane_acl",
            "lke_audit_logs_enabled",
            "bucket_acl_check",
            "nodebalancer_protocol_check",
            "nodebalancer_port_allowlist",
        ),
    ),
    BuiltinProfile(
        "minimal-dev",
        "Minimal / Dev",
        "Lightweight profile for development and staging accounts; only blocking issues are flagged.",
        "foundation",
        ("firewall_attached", "no_open_inbound", "db_allowlist_check", "db_public_access", "tfa_users"),
    ),
    BuiltinProfile(
        "all-rules",
        "All Rules",
        "Enables every built-in rule for full visibility.",
        "strict",
        tuple(sorted(rule.condition_type for rule in BUILTIN_RULES)),
    ),
)


async def seed_catalog(session: AsyncSession) -> dict[str, int]:
    """Insert or refresh the built-in rules and profiles; idempotent.

    Existing built-in rules keep their activation default so admin edits survive reseeding.
    """
    created_rules = updated_rules = 0
    for seed in BUILTIN_RULES:
        config = parse_condition(seed.condition_type, seed.config).to_storage()
        rule = await session.get(ComplianceRule, seed.rule_id)
        if rule is None:
            session.add(
                ComplianceRule(
                    id=seed.rule_id,
                    account_id=None,
                    name=seed.name,
                    description=seed.description,
                    resource_types=list(seed.resource_types),
                    condition_type=seed.condition_type,
                    condition_config=config,
                    severity=seed.severity,
                    is_active=True,
                    is_builtin=True,
                )
            )
            created_rules += 1
            continue
        rule.name = seed.name
        rule.description = seed.description
        updated_rules += 1

    created_profiles = updated_profiles = 0
    for seed in BUILTIN_PROFILES:
        profile = await session.get(ComplianceProfile, seed.profile_id)
        if profile is None:
            session.add(
                ComplianceProfile(
                    id=seed.profile_id,
                    slug=seed.slug,
                    name=seed.name,
                    description=seed.description,
                    tier=seed.tier,
                    version=seed.version,
                    rule_condition_types=list(seed.condition_types),
                    is_builtin=True,
                )
            )
            created_profiles += 1
            continue
        profile.name = seed.name
        profile.description = seed.description
        profile.tier = seed.tier
        profile.version = seed.version
        profile.rule_condition_types = list(seed.condition_types)
        updated_profiles += 1

    await session.flush()
    logger.info(
        "compliance_catalog_seeded rules_created=%s rules_updated=%s profiles_created=%s profiles_updated=%s",
        created_rules,
        updated_rules,
        created_profiles,
        updated_profiles,
    )
    return {
        "rules_created": created_rules,
        "rules_updated": updated_rules,
        "profiles_created": created_profiles,
        "profiles_updated": updated_profiles,
    }
