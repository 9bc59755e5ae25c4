from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from postureguard.core.errors import ConfigurationError


RESOURCE_TYPES: tuple[str, ...] = (
    "linode",
    "firewall",
    "volume",
    "nodebalancer",
    "lke_cluster",
    "database",
    "bucket",
    "vpc",
)
ALL_RESOURCE_TYPES = frozenset(RESOURCE_TYPES)

SEVERITIES: tuple[str, ...] = ("critical", "warning", "info")
COMPOSITE_CONDITION_TYPE = "composite"
COMPOSITE_OPERATORS: tuple[str, ...] = ("AND", "OR", "NOT", "IF_THEN")


class ConditionConfig(BaseModel):
    # Stored configs may carry keys from older catalog versions; ignore them.
    model_config = ConfigDict(extra="ignore", frozen=True)

    # None marks an account-wide condition evaluated once per account.
    applies_to: ClassVar[frozenset[str] | None] = ALL_RESOURCE_TYPES

    def to_storage(self) -> dict[str, Any]:
        # Drop the discriminator; it lives in the rule's condition_type column.
        return self.model_dump(exclude={"condition_type"})


class FirewallAttached(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["firewall_attached"] = "firewall_attached"


class FirewallHasTargets(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"firewall"})
    condition_type: Literal["firewall_has_targets"] = "firewall_has_targets"


class NoOpenInbound(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"firewall"})
    condition_type: Literal["no_open_inbound"] = "no_open_inbound"
    sensitive_ports: list[int] = Field(default_factory=lambda: [22, 3389, 3306, 5432])


class FirewallRulesCheck(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["firewall_rules_check"] = "firewall_rules_check"
    required_inbound_policy: str | None = None
    required_outbound_policy: str | None = None
    blocked_ports: list[int] = Field(default_factory=list)
    allowed_source_ips: list[str] = Field(default_factory=list)
    require_no_open_ports: bool = False


class FirewallRfc1918Lateral(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"firewall"})
    condition_type: Literal["firewall_rfc1918_lateral"] = "firewall_rfc1918_lateral"
    sensitive_ports: list[int] = Field(
        default_factory=lambda: [22, 3389, 3306, 5432, 5984, 6379, 9200, 27017]
    )


class FirewallRuleDescriptions(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"firewall"})
    condition_type: Literal["firewall_rule_descriptions"] = "firewall_rule_descriptions"


class FirewallNoDuplicateRules(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"firewall"})
    condition_type: Literal["firewall_no_duplicate_rules"] = "firewall_no_duplicate_rules"


class FirewallAllPortsAllowed(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"firewall"})
    condition_type: Literal["firewall_all_ports_allowed"] = "firewall_all_ports_allowed"
    check_inbound: bool = True
    check_outbound: bool = False
    actions: list[str] = Field(default_factory=lambda: ["ACCEPT"])


class MinNodeCount(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"lke_cluster"})
    condition_type: Literal["min_node_count"] = "min_node_count"
    min_count: int = Field(default=2, ge=1)


class LkeControlPlaneHa(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"lke_cluster"})
    condition_type: Literal["lke_control_plane_ha"] = "lke_control_plane_ha"


class LkeAuditLogsEnabled(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"lke_cluster"})
    condition_type: Literal["lke_audit_logs_enabled"] = "lke_audit_logs_enabled"


class LkeControlPlaneAcl(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"lke_cluster"})
    condition_type: Literal["lke_control_plane_acl"] = "lke_control_plane_acl"


class RequiredTag(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    # "*" accepts any value.
    value: str = "*"


class HasTags(ConditionConfig):
    condition_type: Literal["has_tags"] = "has_tags"
    required_tags: list[RequiredTag] = Field(default_factory=list)
    min_tags: int = Field(default=1, ge=0)


class VolumeAttached(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"volume"})
    condition_type: Literal["volume_attached"] = "volume_attached"


class VolumeEncryptionEnabled(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"volume"})
    condition_type: Literal["volume_encryption_enabled"] = "volume_encryption_enabled"


class BucketAclCheck(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"bucket"})
    condition_type: Literal["bucket_acl_check"] = "bucket_acl_check"
    forbidden_acls: list[str] = Field(
        default_factory=lambda: ["public-read", "public-read-write", "authenticated-read"]
    )
    required_acl: str | None = None


class BucketCorsCheck(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"bucket"})
    condition_type: Literal["bucket_cors_check"] = "bucket_cors_check"
    require_cors_disabled: bool = False
    require_cors_enabled: bool = False


class ApprovedRegions(ConditionConfig):
    condition_type: Literal["approved_regions"] = "approved_regions"
    approved_regions: list[str] = Field(default_factory=list)


class DbPublicAccess(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"database"})
    condition_type: Literal["db_public_access"] = "db_public_access"
    allow_public_access: bool = False


class DbAllowlistCheck(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"database"})
    condition_type: Literal["db_allowlist_check"] = "db_allowlist_check"
    forbidden_cidrs: list[str] = Field(default_factory=lambda: ["0.0.0.0/0", "::/0"])
    require_non_empty: bool = False


class LinodeBackupsEnabled(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["linode_backups_enabled"] = "linode_backups_enabled"


class LinodeBackupRecency(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["linode_backup_recency"] = "linode_backup_recency"
    max_age_days: int = Field(default=7, ge=1)


class LinodeDiskEncryption(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["linode_disk_encryption"] = "linode_disk_encryption"


class LinodeLockConfigured(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["linode_lock_configured"] = "linode_lock_configured"
    required_lock_types: list[str] = Field(default_factory=list)


class LinodeNotOffline(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["linode_not_offline"] = "linode_not_offline"


class LinodePlanTierByTag(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"linode"})
    condition_type: Literal["linode_plan_tier_by_tag"] = "linode_plan_tier_by_tag"
    tag: str = ""
    tag_value: str = ""
    approved_tiers: list[str] = Field(default_factory=list)


class NodebalancerProtocolCheck(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"nodebalancer"})
    condition_type: Literal["nodebalancer_protocol_check"] = "nodebalancer_protocol_check"
    allowed_protocols: list[str] = Field(default_factory=list)
    forbidden_protocols: list[str] = Field(default_factory=list)


class NodebalancerPortAllowlist(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = frozenset({"nodebalancer"})
    condition_type: Literal["nodebalancer_port_allowlist"] = "nodebalancer_port_allowlist"
    allowed_ports: list[int] = Field(default_factory=list)


class TfaUsers(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = None
    condition_type: Literal["tfa_users"] = "tfa_users"
    exclude_user_types: list[str] = Field(default_factory=lambda: ["proxy"])


class LoginAllowedIps(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = None
    condition_type: Literal["login_allowed_ips"] = "login_allowed_ips"
    allowed_ips: list[str] = Field(default_factory=list)


class CompositeCondition(ConditionConfig):
    applies_to: ClassVar[frozenset[str] | None] = None
    condition_type: Literal["composite"] = "composite"
    operator: Literal["AND", "OR", "NOT", "IF_THEN"]
    rule_ids: list[str] = Field(default_factory=list)
    if_rule_id: str | None = None
    then_rule_id: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "CompositeCondition":
        if self.operator == "IF_THEN":
            if not self.if_rule_id or not self.then_rule_id:
                raise ValueError("IF_THEN composite requires both if_rule_id and then_rule_id")
        elif self.operator == "NOT":
            if len(self.rule_ids) != 1:
                raise ValueError("NOT composite requires exactly one sub-rule")
        elif not self.rule_ids:
            raise ValueError(f"{self.operator} composite requires at least one sub-rule")
        return self

    def referenced_rule_ids(self) -> list[str]:
        if self.operator == "IF_THEN":
            return [self.if_rule_id or "", self.then_rule_id or ""]
        return list(self.rule_ids)


RuleCondition = Annotated[
    Union[
        FirewallAttached,
        FirewallHasTargets,
        NoOpenInbound,
        FirewallRulesCheck,
        FirewallRfc1918Lateral,
        FirewallRuleDescriptions,
        FirewallNoDuplicateRules,
        FirewallAllPortsAllowed,
        MinNodeCount,
        LkeControlPlaneHa,
        LkeAuditLogsEnabled,
        LkeControlPlaneAcl,
        HasTags,
        VolumeAttached,
        VolumeEncryptionEnabled,
        BucketAclCheck,
        BucketCorsCheck,
        ApprovedRegions,
        DbPublicAccess,
        DbAllowlistCheck,
        LinodeBackupsEnabled,
        LinodeBackupRecency,
        LinodeDiskEncryption,
        LinodeLockConfigured,
        LinodeNotOffline,
        LinodePlanTierByTag,
        NodebalancerProtocolCheck,
        NodebalancerPortAllowlist,
        TfaUsers,
        LoginAllowedIps,
        CompositeCondition,
    ],
    Field(discriminator="condition_type"),
]

_CONDITION_ADAPTER: TypeAdapter[RuleCondition] = TypeAdapter(RuleCondition)


# Derive the vocabulary from the union so new variants need no second registration.
CONDITION_TYPES: frozenset[str] = frozenset(
    member.model_fields["condition_type"].default for member in get_args(get_args(RuleCondition)[0])
)


def known_condition_types() -> list[str]:
    return sorted(CONDITION_TYPES)


def parse_condition(condition_type: str, config: dict[str, Any] | None) -> ConditionConfig:
    # Parse the stored (condition_type, config) pair into its typed variant.
    if condition_type not in CONDITION_TYPES:
        raise ConfigurationError(f"Unknown condition type: {condition_type}")
    payload = dict(config or {})
    payload["condition_type"] = condition_type
    try:
        return _CONDITION_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'][1:]) or condition_type}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid {condition_type} config: {messages}") from exc
