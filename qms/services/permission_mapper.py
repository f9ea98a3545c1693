"""
Permission Mapper — compact role bitmask ⇄ stable dotted permission strings.

Two layers:
  - ``Permission`` (IntFlag): the internal capability set stored on Role rows.
  - Dotted ``Resource.Action`` strings ("Documents.Create", "Users.ViewAll"):
    the vocabulary every caller of the authorization service uses.

The translation is the data table ``PERMISSION_MAP``; adding a capability is
one new flag plus one table row (or a ``register_permission_mapping`` call).

Usage:
    from qms.services.permission_mapper import Permission, to_application_permissions

    to_application_permissions(Permission.DOCUMENT_READ | Permission.TASK_CREATE)
    # {"Documents.View", "Tasks.Create", "Tasks.Complete"}
"""

from enum import IntFlag


class Permission(IntFlag):
    NONE = 0

    # Documents
    DOCUMENT_READ = 1
    DOCUMENT_CREATE = 2
    DOCUMENT_EDIT = 4
    DOCUMENT_DELETE = 8
    DOCUMENT_APPROVE = 16
    DOCUMENT_ARCHIVE = 32

    # Audits
    AUDIT_READ = 64
    AUDIT_CREATE = 128
    AUDIT_EDIT = 256
    AUDIT_DELETE = 512

    # CAPA
    CAPA_READ = 1024
    CAPA_CREATE = 2048
    CAPA_EDIT = 4096
    CAPA_DELETE = 8192
    CAPA_VERIFY = 16384

    # Tasks
    TASK_READ = 32768
    TASK_CREATE = 65536
    TASK_EDIT = 131072
    TASK_DELETE = 262144
    TASK_ASSIGN = 524288

    # Users
    USER_READ = 1 << 20
    USER_CREATE = 1 << 21
    USER_EDIT = 1 << 22
    USER_DELETE = 1 << 23

    # Administration
    SYSTEM_SETTINGS = 1 << 24
    VIEW_AUDIT_LOGS = 1 << 25
    MANAGE_ROLES = 1 << 26

    # Stock / analytics
    STOCK_READ = 1 << 27
    STOCK_MANAGE = 1 << 28
    ANALYTICS_READ = 1 << 29

    # Composites
    ALL_DOCUMENTS = (DOCUMENT_READ | DOCUMENT_CREATE | DOCUMENT_EDIT
                     | DOCUMENT_DELETE | DOCUMENT_APPROVE | DOCUMENT_ARCHIVE)
    ALL_AUDITS = AUDIT_READ | AUDIT_CREATE | AUDIT_EDIT | AUDIT_DELETE
    ALL_CAPA = CAPA_READ | CAPA_CREATE | CAPA_EDIT | CAPA_DELETE | CAPA_VERIFY
    ALL_TASKS = TASK_READ | TASK_CREATE | TASK_EDIT | TASK_DELETE | TASK_ASSIGN
    ALL_USERS = USER_READ | USER_CREATE | USER_EDIT | USER_DELETE
    ALL_ADMIN = SYSTEM_SETTINGS | VIEW_AUDIT_LOGS | MANAGE_ROLES
    ALL_STOCK = STOCK_READ | STOCK_MANAGE
    ALL = (ALL_DOCUMENTS | ALL_AUDITS | ALL_CAPA | ALL_TASKS | ALL_USERS
           | ALL_ADMIN | ALL_STOCK | ANALYTICS_READ)


# ── Flag → dotted strings ───────────────────────────────────────────────────
# Some flags expand to several strings: creating a document implies the right
# to submit it, approving implies rejecting, creating a task implies completing.

PERMISSION_MAP: dict[Permission, tuple[str, ...]] = {
    Permission.DOCUMENT_READ: ("Documents.View",),
    Permission.DOCUMENT_CREATE: ("Documents.Create", "Documents.Submit"),
    Permission.DOCUMENT_EDIT: ("Documents.Edit",),
    Permission.DOCUMENT_DELETE: ("Documents.Delete",),
    Permission.DOCUMENT_APPROVE: ("Documents.Approve", "Documents.Reject"),
    Permission.DOCUMENT_ARCHIVE: ("Documents.Archive",),

    Permission.AUDIT_READ: ("Audits.View",),
    Permission.AUDIT_CREATE: ("Audits.Create",),
    Permission.AUDIT_EDIT: ("Audits.Edit",),
    Permission.AUDIT_DELETE: ("Audits.Delete",),

    Permission.CAPA_READ: ("Capa.View",),
    Permission.CAPA_CREATE: ("Capa.Create",),
    Permission.CAPA_EDIT: ("Capa.Edit",),
    Permission.CAPA_DELETE: ("Capa.Delete",),
    Permission.CAPA_VERIFY: ("Capa.Verify",),

    Permission.TASK_READ: ("Tasks.View",),
    Permission.TASK_CREATE: ("Tasks.Create", "Tasks.Complete"),
    Permission.TASK_EDIT: ("Tasks.Edit",),
    Permission.TASK_DELETE: ("Tasks.Delete",),
    Permission.TASK_ASSIGN: ("Tasks.Assign",),

    Permission.USER_READ: ("Users.View",),
    Permission.USER_CREATE: ("Users.Create",),
    Permission.USER_EDIT: ("Users.Edit",),
    Permission.USER_DELETE: ("Users.Delete",),

    Permission.SYSTEM_SETTINGS: ("System.ManageSettings",),
    Permission.VIEW_AUDIT_LOGS: ("AuditLogs.View", "AuditLogs.Export"),
    Permission.MANAGE_ROLES: ("Users.ManageRoles", "Roles.ManagePermissions"),

    Permission.STOCK_READ: ("Stock.View",),
    Permission.STOCK_MANAGE: ("Stock.Manage",),
    Permission.ANALYTICS_READ: ("Analytics.View",),
}

# Read flag → ViewAll string, derived for hierarchy-privileged roles only
VIEW_ALL_MAP: dict[str, str] = {
    "documents": "Documents.ViewAll",
    "tasks": "Tasks.ViewAll",
    "audits": "Audits.ViewAll",
    "capa": "Capa.ViewAll",
    "users": "Users.ViewAll",
}


def register_permission_mapping(flag: Permission, *names: str) -> None:
    """Add (or replace) the dotted strings a single flag expands to."""
    if not names:
        raise ValueError("at least one permission string is required")
    PERMISSION_MAP[Permission(flag)] = tuple(names)


def to_application_permissions(flags) -> set[str]:
    """Translate a bitmask into dotted permission strings.

    Total over any integer: bits without a mapping are ignored.
    """
    value = int(flags or 0)
    result: set[str] = set()
    for flag, names in PERMISSION_MAP.items():
        if value & flag == flag:
            result.update(names)
    return result


def view_all_for_hierarchy_roles(
    has_doc_read: bool = False,
    has_task_read: bool = False,
    has_audit_read: bool = False,
    has_capa_read: bool = False,
    has_user_read: bool = False,
) -> set[str]:
    """Emit ``<Resource>.ViewAll`` for each resource the role can already read."""
    flags = {
        "documents": has_doc_read,
        "tasks": has_task_read,
        "audits": has_audit_read,
        "capa": has_capa_read,
        "users": has_user_read,
    }
    return {VIEW_ALL_MAP[res] for res, granted in flags.items() if granted}


def view_all_for_flags(flags) -> set[str]:
    """Convenience wrapper: derive ViewAll strings straight from a bitmask."""
    value = int(flags or 0)
    return view_all_for_hierarchy_roles(
        has_doc_read=bool(value & Permission.DOCUMENT_READ),
        has_task_read=bool(value & Permission.TASK_READ),
        has_audit_read=bool(value & Permission.AUDIT_READ),
        has_capa_read=bool(value & Permission.CAPA_READ),
        has_user_read=bool(value & Permission.USER_READ),
    )


def from_application_permission(name: str):
    """Reverse lookup: the flag that grants *name*, or None.

    ViewAll strings have no flag of their own and return None.
    """
    for flag, names in PERMISSION_MAP.items():
        if name in names:
            return flag
    return None


def all_application_permissions() -> set[str]:
    """Every dotted string the system knows, including derived ViewAll grants."""
    names = {n for names in PERMISSION_MAP.values() for n in names}
    names.update(VIEW_ALL_MAP.values())
    return names
