"""ORM model exports."""

from iam.models.external import ExternalIdentity, ExternalToken
from iam.models.login_attempt import LoginAttempt
from iam.models.rbac import Group, GroupRole, Permission, Role, RolePermission, UserGroup, UserRole
from iam.models.session import Session
from iam.models.user import User

__all__ = [
    "ExternalIdentity",
    "ExternalToken",
    "Group",
    "GroupRole",
    "LoginAttempt",
    "Permission",
    "Role",
    "RolePermission",
    "Session",
    "User",
    "UserGroup",
    "UserRole",
]
