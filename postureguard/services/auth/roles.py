from __future__ import annotations


ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "editor": 2,
    "admin": 3,
}


def normalize_role(role: str) -> str:
    # Stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str | None, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role or "", 0) >= ROLE_ORDER.get(minimum_role, 0)
