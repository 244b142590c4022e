"""Canonical permission catalogue.

Permissions exist as database rows (so SRSP grants and API key scopes can
reference them by id) but their names are fixed in code. The bootstrap CLI
and the initial migration seed exactly this set.
"""

STACKS_READ = "stacks.read"
STACKS_MANAGE = "stacks.manage"
FILES_READ = "files.read"
FILES_WRITE = "files.write"
LOGS_READ = "logs.read"
DOCKER_MAINTENANCE_READ = "docker.maintenance.read"
DOCKER_MAINTENANCE_WRITE = "docker.maintenance.write"
ADMIN_ALL = "admin.*"

ADMIN_ROLE_NAME = "admin"

PERMISSIONS: dict[str, dict] = {
    STACKS_READ: {
        "resource": "stacks",
        "action": "read",
        "description": "View stacks and their status",
    },
    STACKS_MANAGE: {
        "resource": "stacks",
        "action": "manage",
        "description": "Run compose operations against stacks",
    },
    FILES_READ: {
        "resource": "files",
        "action": "read",
        "description": "Browse and read stack files",
    },
    FILES_WRITE: {
        "resource": "files",
        "action": "write",
        "description": "Create, modify and delete stack files",
    },
    LOGS_READ: {
        "resource": "logs",
        "action": "read",
        "description": "Read container logs",
    },
    DOCKER_MAINTENANCE_READ: {
        "resource": "docker.maintenance",
        "action": "read",
        "description": "View Docker disk usage and maintenance info",
    },
    DOCKER_MAINTENANCE_WRITE: {
        "resource": "docker.maintenance",
        "action": "write",
        "description": "Prune images, volumes and networks",
    },
    ADMIN_ALL: {
        "resource": "admin",
        "action": "*",
        "description": "Full administrative access through an API key",
        "is_api_key_only": True,
    },
}

# Commands that write into the stack directory rather than run compose.
FILE_WRITE_COMMANDS: frozenset[str] = frozenset({"create-archive", "extract-archive"})


def required_permission_for_command(command: str) -> str:
    """Permission an operation command needs on its stack."""
    return FILES_WRITE if command in FILE_WRITE_COMMANDS else STACKS_MANAGE


def is_known_permission(name: str) -> bool:
    return name in PERMISSIONS


def is_admin_permission(name: str) -> bool:
    """Check if a permission name is in the admin namespace."""
    return name.startswith("admin.")
