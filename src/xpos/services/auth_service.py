from __future__ import annotations

from xpos.domain.errors import AuthorizationError
from xpos.domain.models import User

PERMISSIONS: dict[str, set[str]] = {
    "end_any_shift": {"admin"},
    "abandon_shift": {"admin"},
    "deposit": {"admin", "employee"},
    "withdraw": {"admin", "employee"},
    "reconcile_drawer": {"admin", "employee"},
    "adjust_drawer": {"admin"},
    "manage_drawers": {"admin"},
    "close_drawer": {"admin", "employee"},
    "review_closing": {"admin"},
}


class AuthService:
    """Authorization only: who may do what. Identities come from the caller."""

    def can(self, user: User, action: str) -> bool:
        allowed_roles = PERMISSIONS.get(action)
        if not allowed_roles or not user.active:
            return False
        return user.role in allowed_roles

    def require_action(self, user: User, action: str) -> None:
        if not self.can(user, action):
            raise AuthorizationError(f"Role '{user.role}' is not allowed to perform '{action}'.")

    def resolve_actor(self, uow, actor_id: int) -> User:
        user = uow.get_user(actor_id)
        if user is None or not user.active:
            raise AuthorizationError(f"User {actor_id} is unknown or inactive.")
        return user
