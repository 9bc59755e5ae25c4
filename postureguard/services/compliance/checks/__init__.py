from __future__ import annotations

# Importing the check modules registers every leaf check.
from postureguard.services.compliance.checks import (  # noqa: F401
    account,
    database,
    firewall,
    general,
    kubernetes,
    linode,
    nodebalancer,
    storage,
)
