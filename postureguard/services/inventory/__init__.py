from __future__ import annotations

from postureguard.services.inventory.snapshots import ObservedResource, SyncReport, diff_resource, record_inventory_sync


__all__ = ["ObservedResource", "SyncReport", "diff_resource", "record_inventory_sync"]
