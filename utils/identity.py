"""Identity & role context: resolve bearer credentials to (subject_id, role) pairs."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from flask_login import UserMixin

from extensions import db
from models import ROLES, User
from utils.errors import AuthorizationError
from utils.security import generate_token, hash_value

ADMIN_ROLES: tuple[str, ...] = ("ADMIN", "MODERATOR", "SUPERADMIN")
BLOCKING_ROLES: tuple[str, ...] = ("ADMIN", "SUPERADMIN")
WARD_MANAGER_ROLES: tuple[str, ...] = ("ADMIN", "SUPERADMIN")
CITIZEN_ROLES: tuple[str, ...] = ("CITIZEN",)
CONTRACTOR_ROLES: tuple[str, ...] = ("CONTRACTOR",)


@dataclass(frozen=True)
class Actor:
    """Trusted caller identity handed to every workflow operation."""

    subject_id: str
    role: str
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.role} ({self.subject_id})"


class ActorPrincipal(UserMixin):
    """Flask-Login principal for identities that have no backing User row."""

    def __init__(self, subject_id: str, role: str, display_name: Optional[str] = None) -> None:
        self.id = subject_id
        self.role = role
        self.full_name = display_name or subject_id


class IdentityProvider(ABC):
    @abstractmethod
    def resolve(self, credential: Optional[str]) -> Optional[Actor]:
        """Return the actor behind ``credential`` or None when it is unknown."""

    def load_principal(self, credential: Optional[str]):
        actor = self.resolve(credential)
        if not actor:
            return None
        return ActorPrincipal(actor.subject_id, actor.role, actor.display_name)


class StaticCredentialProvider(IdentityProvider):
    """Fixed token table, e.g. for local demos and smoke environments."""

    def __init__(self, credentials: Mapping[str, Mapping[str, str]]) -> None:
        self._credentials = {}
        for token, entry in (credentials or {}).items():
            role = str(entry.get("role", "")).upper()
            subject_id = entry.get("subject_id")
            if not subject_id or role not in ROLES:
                continue
            self._credentials[token] = Actor(str(subject_id), role, entry.get("name"))

    def resolve(self, credential: Optional[str]) -> Optional[Actor]:
        if not credential:
            return None
        return self._credentials.get(credential)


class UserTokenProvider(IdentityProvider):
    """Looks up hashed API tokens stored on active users."""

    def _user_for(self, credential: Optional[str]) -> Optional[User]:
        if not credential:
            return None
        return User.query.filter_by(api_token_hash=hash_value(credential), is_active=True).first()

    def resolve(self, credential: Optional[str]) -> Optional[Actor]:
        user = self._user_for(credential)
        if not user:
            return None
        return Actor(user.id, user.role, user.full_name)

    def load_principal(self, credential: Optional[str]):
        return self._user_for(credential)


def build_identity_provider(config) -> IdentityProvider:
    if (config.get("IDENTITY_PROVIDER") or "database") == "static":
        return StaticCredentialProvider(config.get("STATIC_CREDENTIALS") or {})
    return UserTokenProvider()


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value or not header_value.startswith("Bearer "):
        return None
    token = header_value[len("Bearer "):].strip()
    return token or None


def issue_api_token(user: User, token_bytes: int = 32) -> str:
    """Rotate the user's API token; only the hash is persisted."""
    token = generate_token(token_bytes)
    user.api_token_hash = hash_value(token)
    db.session.add(user)
    return token


def actor_from_principal(principal) -> Actor:
    return Actor(str(principal.id), principal.role, getattr(principal, "full_name", None))


def require_role(actor: Actor, roles: Iterable[str], *, action: str = "perform this action") -> None:
    allowed = tuple(roles)
    if not actor or actor.role not in allowed:
        raise AuthorizationError(
            f"Access denied. Required roles to {action}: {', '.join(allowed)}.",
            details={"role": actor.role if actor else None},
        )
