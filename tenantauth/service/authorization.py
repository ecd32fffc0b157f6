from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditRecorder
from tenantauth.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import AuditAction, User, UserAppRole
from tenantauth.storage.repository import Repository

logger = get_logger(__name__)

# A role with one of these names in any app makes its holder a superadmin
# everywhere. Name matching lives only here.
SUPERADMIN_ROLE_NAMES = frozenset({"owner", "admin"})
APP_OWNER_ROLE_NAMES = SUPERADMIN_ROLE_NAMES
DEFAULT_ROLE_NAME = "user"


def grants_superadmin(role_names: Iterable[str]) -> bool:
    return any(name in SUPERADMIN_ROLE_NAMES for name in role_names)


class AuthorizationResolver:
    """Per-app role lookup and the app-membership gate.

    Roles are read from the repository on every call; nothing is cached so a
    revoked role takes effect on the next token issuance.
    """

    def __init__(self, store: Repository, audit: AuditRecorder) -> None:
        self.store = store
        self.audit = audit

    def get_roles(self, user_id: str, app_id: str) -> List[str]:
        return sorted({name for _, name in self.store.list_role_names(user_id, app_id)})

    def get_roles_by_app(self, user_id: str) -> Dict[str, List[str]]:
        grouped: Dict[str, set] = defaultdict(set)
        for app_id, name in self.store.list_role_names(user_id):
            grouped[app_id].add(name)
        return {app_id: sorted(names) for app_id, names in grouped.items()}

    def is_superadmin(self, user_id: str) -> bool:
        return grants_superadmin(name for _, name in self.store.list_role_names(user_id))

    def is_app_owner(self, user_id: str, app_id: str) -> bool:
        return any(name in APP_OWNER_ROLE_NAMES for name in self.get_roles(user_id, app_id))

    def assign_role(
        self,
        user_id: str,
        app_id: str,
        role_name: str,
        *,
        assigned_by: Optional[str] = None,
    ) -> UserAppRole:
        if not role_name or not role_name.strip():
            raise ValidationError("role name required")
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not self.store.get_app(app_id):
            raise NotFoundError("app not found", detail={"app_id": app_id})
        role = self.store.ensure_role(app_id, role_name.strip())
        try:
            assignment = self.store.assign_role(user_id, role, assigned_by=assigned_by)
        except ConstraintViolation as exc:
            raise ConflictError(
                "role already assigned",
                detail={"app_id": app_id, "role": role.name, "field": exc.field},
            ) from exc
        logger.info("role_assigned", user_id=user_id, app_id=app_id, role=role.name)
        self.audit.record(
            AuditAction.ROLE_ASSIGN,
            user_id,
            app_id=app_id,
            role=role.name,
            assigned_by=assigned_by,
        )
        return assignment

    def ensure_app_access(self, user: User, app_id: str) -> bool:
        """Raise ForbiddenError unless the user may obtain tokens for ``app_id``.

        Superadmins pass regardless of membership. Returns whether the user is
        a superadmin so callers do not resolve it twice.
        """
        superadmin = self.is_superadmin(user.id)
        if superadmin or app_id in user.opted_in_apps:
            return superadmin
        logger.info("app_access_denied", user_id=user.id, app_id=app_id)
        raise ForbiddenError(
            "User has not opted in to this application", detail={"app_id": app_id}
        )
