from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from postureguard.core.errors import ConfigurationError
from postureguard.services.compliance import (
    STATUS_COMPLIANT,
    STATUS_NON_COMPLIANT,
    STATUS_NOT_APPLICABLE,
    EvaluationContext,
    ResourceRecord,
    evaluate_leaf,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(resource_type: str = "linode", resource_id: str = "101", **specs) -> ResourceRecord:
    return ResourceRecord(
        id=f"res-{resource_type}-{resource_id}",
        account_id="acct-1",
        resource_id=resource_id,
        resource_type=resource_type,
        label=f"{resource_type}-{resource_id}",
        region="us-east",
        status="running",
        specs=specs,
    )


def _context(*records: ResourceRecord, settings: dict | None = None) -> EvaluationContext:
    return EvaluationContext.build(account_id="acct-1", settings=settings, resources=list(records), now=NOW)


def test_has_tags_counts_any_tags_by_default() -> None:
    tagged = _record(tags=["env:prod"])
    untagged = _record(resource_id="102", tags=[])
    context = _context(tagged, untagged)
    assert evaluate_leaf("has_tags", {}, tagged, context).status == STATUS_COMPLIANT
    assert evaluate_leaf("has_tags", {}, untagged, context).status == STATUS_NON_COMPLIANT


def test_has_tags_required_values() -> None:
    resource = _record(tags=["env:staging", "owner:ops"])
    context = _context(resource)
    config = {"required_tags": [{"key": "env", "value": "prod"}, {"key": "owner"}]}
    verdict = evaluate_leaf("has_tags", config, resource, context)
    assert verdict.status == STATUS_NON_COMPLIANT
    assert "env" in verdict.detail
    assert "staging" in verdict.detail

    config = {"required_tags": [{"key": "ENV", "value": "*"}, {"key": "owner"}]}
    assert evaluate_leaf("has_tags", config, resource, context).status == STATUS_COMPLIANT


def test_rule_outside_condition_types_is_not_applicable() -> None:
    volume = _record(resource_type="volume", resource_id="v1")
    verdict = evaluate_leaf("firewall_attached", {}, volume, _context(volume))
    assert verdict.status == STATUS_NOT_APPLICABLE


def test_rule_scope_narrows_applicable_types() -> None:
    volume = _record(resource_type="volume", resource_id="v1", tags=["a"])
    verdict = evaluate_leaf("has_tags", {}, volume, _context(volume), resource_types=["linode"])
    assert verdict.status == STATUS_NOT_APPLICABLE


def test_firewall_attached_via_firewall_entities() -> None:
    instance = _record(resource_id="101")
    unprotected = _record(resource_id="102")
    fw = ResourceRecord(
        id="res-fw-1",
        account_id="acct-1",
        resource_id="9001",
        resource_type="firewall",
        label="edge",
        specs={"entities": [{"id": 101, "type": "linode"}]},
    )
    context = _context(instance, unprotected, fw)
    verdict = evaluate_leaf("firewall_attached", {}, instance, context)
    assert verdict.status == STATUS_COMPLIANT
    assert "edge" in verdict.detail
    assert evaluate_leaf("firewall_attached", {}, unprotected, context).status == STATUS_NON_COMPLIANT


def test_no_open_inbound_flags_sensitive_ports() -> None:
    fw = _record(
        resource_type="firewall",
        resource_id="fw1",
        inbound_rules_detail=[
            {
                "label": "ssh-anywhere",
                "action": "ACCEPT",
                "protocol": "TCP",
                "ports": "20-25",
                "addresses": {"ipv4": ["0.0.0.0/0"]},
            }
        ],
    )
    verdict = evaluate_leaf("no_open_inbound", {}, fw, _context(fw))
    assert verdict.status == STATUS_NON_COMPLIANT
    assert "Port 22" in verdict.detail

    restricted = _record(
        resource_type="firewall",
        resource_id="fw2",
        inbound_rules_detail=[
            {"action": "ACCEPT", "protocol": "TCP", "ports": "22", "addresses": {"ipv4": ["10.0.0.0/8"]}}
        ],
    )
    assert evaluate_leaf("no_open_inbound", {}, restricted, _context(restricted)).status == STATUS_COMPLIANT


def test_min_node_count() -> None:
    cluster = _record(resource_type="lke_cluster", resource_id="k1", nodes=[{"id": 1}])
    context = _context(cluster)
    assert evaluate_leaf("min_node_count", {"min_count": 2}, cluster, context).status == STATUS_NON_COMPLIANT
    assert evaluate_leaf("min_node_count", {"min_count": 1}, cluster, context).status == STATUS_COMPLIANT


def test_db_public_access_without_data_is_not_applicable() -> None:
    database = _record(resource_type="database", resource_id="db1")
    verdict = evaluate_leaf("db_public_access", {}, database, _context(database))
    assert verdict.status == STATUS_NOT_APPLICABLE


def test_approved_regions_empty_list_is_not_applicable() -> None:
    resource = _record()
    context = _context(resource)
    assert evaluate_leaf("approved_regions", {}, resource, context).status == STATUS_NOT_APPLICABLE
    assert (
        evaluate_leaf("approved_regions", {"approved_regions": ["us-east"]}, resource, context).status
        == STATUS_COMPLIANT
    )
    assert (
        evaluate_leaf("approved_regions", {"approved_regions": ["eu-west"]}, resource, context).status
        == STATUS_NON_COMPLIANT
    )


def test_backup_recency_uses_context_clock() -> None:
    recent = _record(backups_enabled=True, backups_last_successful=(NOW - timedelta(days=2)).isoformat())
    stale = _record(
        resource_id="102", backups_enabled=True, backups_last_successful=(NOW - timedelta(days=30)).isoformat()
    )
    context = _context(recent, stale)
    assert evaluate_leaf("linode_backup_recency", {}, recent, context).status == STATUS_COMPLIANT
    assert evaluate_leaf("linode_backup_recency", {}, stale, context).status == STATUS_NON_COMPLIANT


def test_tfa_users_is_account_wide() -> None:
    context = _context(
        settings={
            "users": [
                {"username": "alice", "tfa_enabled": True},
                {"username": "bob", "tfa_enabled": False},
                {"username": "svc", "user_type": "proxy", "tfa_enabled": False},
            ]
        }
    )
    verdict = evaluate_leaf("tfa_users", {}, None, context)
    assert verdict.status == STATUS_NON_COMPLIANT
    assert "bob" in verdict.detail
    assert "svc" not in verdict.detail


def test_tfa_users_without_user_data_is_not_applicable() -> None:
    assert evaluate_leaf("tfa_users", {}, None, _context()).status == STATUS_NOT_APPLICABLE


def test_login_allowed_ips() -> None:
    context = _context(settings={"logins": [{"username": "alice", "ip": "203.0.113.5"}]})
    assert (
        evaluate_leaf("login_allowed_ips", {"allowed_ips": ["203.0.113.5"]}, None, context).status
        == STATUS_COMPLIANT
    )
    verdict = evaluate_leaf("login_allowed_ips", {"allowed_ips": ["198.51.100.1"]}, None, context)
    assert verdict.status == STATUS_NON_COMPLIANT
    assert "203.0.113.5" in verdict.detail


def test_unknown_condition_type_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        evaluate_leaf("does_not_exist", {}, _record(), _context())


def test_invalid_config_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        evaluate_leaf("min_node_count", {"min_count": 0}, _record(resource_type="lke_cluster"), _context())


def test_composite_is_not_a_leaf() -> None:
    with pytest.raises(ConfigurationError):
        evaluate_leaf("composite", {"operator": "AND", "rule_ids": ["a"]}, _record(), _context())
