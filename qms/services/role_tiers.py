"""
Role Tiers — one explicit privilege tier per role.

Every role name is classified ONCE (when the Role row is inserted) into a
``RoleTier``; all authorization and workflow code asks for the tier instead of
string-matching role names at each call site. The name lists below are the
tenant seed contract: these spellings must keep resolving to the same tier.

Tier precedence (highest first):
    admin > executive > deputy > manager > auditor > staff
"""

from __future__ import annotations

from enum import Enum

from qms.services.permission_mapper import Permission


class RoleTier(str, Enum):
    ADMIN = "admin"
    EXECUTIVE = "executive"   # TMD / Country Manager
    DEPUTY = "deputy"
    MANAGER = "manager"
    AUDITOR = "auditor"
    STAFF = "staff"


TIER_RANK = {
    RoleTier.ADMIN: 60,
    RoleTier.EXECUTIVE: 50,
    RoleTier.DEPUTY: 40,
    RoleTier.MANAGER: 30,
    RoleTier.AUDITOR: 20,
    RoleTier.STAFF: 10,
}

# Tiers that receive derived <Resource>.ViewAll grants
HIERARCHY_TIERS = frozenset({RoleTier.EXECUTIVE, RoleTier.DEPUTY, RoleTier.MANAGER})
# Tiers allowed to act as managers in task/CAPA workflows
MANAGER_AND_ABOVE = frozenset({RoleTier.ADMIN, RoleTier.EXECUTIVE, RoleTier.DEPUTY, RoleTier.MANAGER})
# Tiers that see every document/task in the tenant
ORG_WIDE_READERS = frozenset({RoleTier.ADMIN, RoleTier.EXECUTIVE, RoleTier.DEPUTY, RoleTier.AUDITOR})

ADMIN_ROLE_NAMES = {"system admin", "systemadmin", "admin", "tenantadmin", "tenant admin"}
EXECUTIVE_ROLE_NAMES = {"tmd", "topmanagingdirector", "top managing director", "country manager"}
AUDITOR_ROLE_NAMES = {"auditor", "internal auditor"}
FINANCE_ROLE_NAMES = {"finance manager", "finance, accounting & logistics manager", "finance"}


def _norm(name: str | None) -> str:
    return " ".join((name or "").split()).lower()


def classify_role_name(name: str | None) -> RoleTier:
    """Map a role name to its tier. Unknown names are ``staff``."""
    n = _norm(name)
    if n in ADMIN_ROLE_NAMES:
        return RoleTier.ADMIN
    if n in EXECUTIVE_ROLE_NAMES:
        return RoleTier.EXECUTIVE
    if "deputy" in n:
        return RoleTier.DEPUTY
    if n in AUDITOR_ROLE_NAMES:
        return RoleTier.AUDITOR
    if "manager" in n:
        return RoleTier.MANAGER
    return RoleTier.STAFF


def is_finance_role_name(name: str | None) -> bool:
    n = _norm(name)
    return n in FINANCE_ROLE_NAMES or n.startswith("finance")


def coerce_tier(value) -> RoleTier:
    if isinstance(value, RoleTier):
        return value
    try:
        return RoleTier(value)
    except ValueError:
        return RoleTier.STAFF


def highest_tier(tiers) -> RoleTier:
    """Highest-ranked tier in *tiers*; ``staff`` when empty."""
    best = RoleTier.STAFF
    for t in tiers:
        t = coerce_tier(t)
        if TIER_RANK[t] > TIER_RANK[best]:
            best = t
    return best


def role_tier(role) -> RoleTier:
    """Tier stored on a Role row, classifying legacy rows that predate the column."""
    if getattr(role, "tier", None):
        return coerce_tier(role.tier)
    return classify_role_name(role.name)


# ── Tenant seed roles ───────────────────────────────────────────────────────

STANDARD_ROLES = {
    "System Admin": ("Platform administration", Permission.ALL),
    "TMD": (
        "Top Managing Director",
        Permission.ALL_DOCUMENTS | Permission.ALL_AUDITS | Permission.ALL_CAPA
        | Permission.ALL_TASKS | Permission.USER_READ | Permission.USER_CREATE
        | Permission.USER_EDIT | Permission.VIEW_AUDIT_LOGS | Permission.MANAGE_ROLES,
    ),
    "Deputy Country Manager": (
        "Operations leadership",
        Permission.DOCUMENT_READ | Permission.DOCUMENT_CREATE | Permission.DOCUMENT_EDIT
        | Permission.DOCUMENT_APPROVE | Permission.DOCUMENT_ARCHIVE
        | Permission.AUDIT_READ | Permission.AUDIT_CREATE | Permission.AUDIT_EDIT
        | Permission.CAPA_READ | Permission.CAPA_CREATE | Permission.CAPA_EDIT | Permission.CAPA_VERIFY
        | Permission.ALL_TASKS | Permission.USER_READ | Permission.VIEW_AUDIT_LOGS,
    ),
    "Department Manager": (
        "Departmental oversight",
        Permission.DOCUMENT_READ | Permission.DOCUMENT_CREATE | Permission.DOCUMENT_EDIT
        | Permission.DOCUMENT_APPROVE | Permission.ALL_TASKS
        | Permission.CAPA_READ | Permission.CAPA_CREATE | Permission.CAPA_EDIT
        | Permission.AUDIT_READ,
    ),
    "Finance Manager": (
        "Finance, accounting and logistics",
        Permission.DOCUMENT_READ | Permission.DOCUMENT_CREATE | Permission.DOCUMENT_EDIT
        | Permission.DOCUMENT_APPROVE | Permission.ALL_TASKS
        | Permission.CAPA_READ | Permission.STOCK_READ | Permission.ANALYTICS_READ,
    ),
    "Auditor": (
        "Read-only audit access",
        Permission.DOCUMENT_READ | Permission.AUDIT_READ | Permission.VIEW_AUDIT_LOGS,
    ),
    "Staff": (
        "Operational contributor",
        Permission.DOCUMENT_READ | Permission.DOCUMENT_CREATE | Permission.TASK_READ
        | Permission.TASK_CREATE,
    ),
}
