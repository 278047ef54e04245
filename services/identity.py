"""
Role directory: closed role set and the capabilities each role grants.
"""

import enum

from sqlalchemy.orm import Session

from errors import AuthorizationError, NotFoundError
from models import User, UserRole


class Capability(str, enum.Enum):
    REQUEST_VERIFICATION = "request_verification"
    REVIEW_VERIFICATION = "review_verification"
    EXPERT_REVIEW = "expert_review"
    ADMINISTER = "administer"
    RECEIVE_SETTLEMENT = "receive_settlement"


ROLE_CAPABILITIES = {
    UserRole.BUYER: frozenset(),
    UserRole.SELLER: frozenset({Capability.REQUEST_VERIFICATION, Capability.RECEIVE_SETTLEMENT}),
    UserRole.VERIFIER: frozenset({Capability.REVIEW_VERIFICATION, Capability.RECEIVE_SETTLEMENT}),
    UserRole.EXPERT: frozenset({Capability.EXPERT_REVIEW, Capability.RECEIVE_SETTLEMENT}),
    UserRole.ADMIN: frozenset({Capability.ADMINISTER}),
}


def has_capability(user: User, capability: Capability) -> bool:
    if user is None or not user.is_active:
        return False
    return capability in ROLE_CAPABILITIES.get(user.role, frozenset())


def roles_with(capability: Capability) -> list:
    return [role for role, caps in ROLE_CAPABILITIES.items() if capability in caps]


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


def require_capability(db: Session, user_id: int, capability: Capability) -> User:
    """Load the user and fail unless it holds ``capability``."""
    user = get_user(db, user_id)
    if not has_capability(user, capability):
        raise AuthorizationError(f"User {user_id} is not allowed to {capability.value.replace('_', ' ')}")
    return user
