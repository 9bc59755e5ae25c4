from __future__ import annotations

import pytest
from pydantic import ValidationError

from postureguard.services.inventory.snapshots import ObservedResource, diff_resource


def _observed(**overrides) -> ObservedResource:
    values = {
        "resource_id": "101",
        "resource_type": "linode",
        "label": "web-1",
        "region": "us-east",
        "status": "running",
        "plan_type": "g6-standard-2",
        "monthly_cost": 24.0,
        "specs": {"tags": ["env:prod"], "backups": {"enabled": True, "schedule": {"day": "Sunday"}}},
    }
    values.update(overrides)
    return ObservedResource(**values)


def test_first_observation_has_no_diff() -> None:
    assert diff_resource(None, _observed()) is None


def test_identical_observations_diff_to_empty() -> None:
    assert diff_resource(_observed(), _observed()) == {}


def test_single_field_change() -> None:
    diff = diff_resource(_observed(), _observed(status="offline"))
    assert diff == {"status": {"from": "running", "to": "offline"}}


def test_nested_spec_changes_use_dotted_paths() -> None:
    after = _observed(
        specs={
            "tags": ["env:prod", "team:core"],
            "backups": {"enabled": True, "schedule": {"day": "Monday"}},
            "ipv4": ["192.0.2.10"],
        }
    )
    diff = diff_resource(_observed(), after)
    assert set(diff) == {"specs"}
    specs = diff["specs"]
    assert specs["backups.schedule.day"] == {"from": "Sunday", "to": "Monday"}
    assert specs["tags"] == {"from": ["env:prod"], "to": ["env:prod", "team:core"]}
    assert specs["ipv4"] == {"from": None, "to": ["192.0.2.10"]}
    assert "backups.enabled" not in specs


def test_diff_accepts_plain_mappings() -> None:
    before = {"label": "a", "status": "running", "specs": {}}
    after = {"label": "b", "status": "running", "specs": {"x": 1}}
    diff = diff_resource(before, after)
    assert diff["label"] == {"from": "a", "to": "b"}
    assert diff["specs"] == {"x": {"from": None, "to": 1}}


def test_unknown_resource_type_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _observed(resource_type="spaceship")
