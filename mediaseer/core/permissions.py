"""User permission bitmask and checks."""

from enum import IntFlag
from typing import Any, Iterable, Union


class Permission(IntFlag):
    NONE = 0
    ADMIN = 2
    MANAGE_SETTINGS = 4
    MANAGE_USERS = 8
    MANAGE_REQUESTS = 16
    REQUEST = 32
    AUTO_APPROVE = 128
    AUTO_APPROVE_MOVIE = 256
    AUTO_APPROVE_TV = 512
    REQUEST_ADVANCED = 8192
    REQUEST_MOVIE = 262144
    REQUEST_TV = 524288
    MANAGE_ISSUES = 1048576
    VIEW_ISSUES = 2097152
    CREATE_ISSUES = 4194304


DEFAULT_USER_PERMISSIONS = int(Permission.REQUEST | Permission.CREATE_ISSUES)

_ALL_PERMISSION_BITS = 0
for _perm in Permission:
    _ALL_PERMISSION_BITS |= int(_perm)

PermissionSpec = Union[Permission, int, Iterable[Union[Permission, int]]]


def normalize_permissions(value: Any) -> int:
    """Coerce a stored or submitted permission value to a valid bitmask."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid permissions value: {value}")
    if parsed < 0:
        raise ValueError(f"Invalid permissions value: {value}")
    return parsed & _ALL_PERMISSION_BITS


def has_permission(required: PermissionSpec, user_permissions: Any, match: str = "and") -> bool:
    """Check a user's bitmask against one or more required permissions.

    ``match="and"`` needs every listed permission, ``"or"`` needs any one.
    ADMIN satisfies every check and an empty requirement always passes.
    """
    try:
        perms = int(user_permissions or 0)
    except (TypeError, ValueError):
        return False

    if perms & Permission.ADMIN:
        return True

    if isinstance(required, (Permission, int)):
        required_list = [int(required)]
    else:
        required_list = [int(p) for p in required]

    required_list = [p for p in required_list if p]
    if not required_list:
        return True

    if match == "or":
        return any(perms & p == p for p in required_list)
    return all(perms & p == p for p in required_list)


def can_request(media_type: str, user_permissions: Any) -> bool:
    per_type = Permission.REQUEST_MOVIE if media_type == "movie" else Permission.REQUEST_TV
    return has_permission([Permission.REQUEST, per_type], user_permissions, match="or")


def can_auto_approve(media_type: str, user_permissions: Any) -> bool:
    per_type = Permission.AUTO_APPROVE_MOVIE if media_type == "movie" else Permission.AUTO_APPROVE_TV
    return has_permission(
        [Permission.AUTO_APPROVE, per_type, Permission.MANAGE_REQUESTS],
        user_permissions,
        match="or",
    )


def is_admin_permissions(user_permissions: Any) -> bool:
    try:
        return bool(int(user_permissions or 0) & Permission.ADMIN)
    except (TypeError, ValueError):
        return False


def describe_permissions(user_permissions: Any) -> list[str]:
    """Names of the flags set in a bitmask, for API payloads and logs."""
    try:
        perms = int(user_permissions or 0)
    except (TypeError, ValueError):
        return []
    return [p.name for p in Permission if p and perms & p == p and p.name]
