from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional

from ehrguard.logging import get_logger

logger = get_logger(__name__)


class Role(IntEnum):
    """Canonical roles ordered by privilege rank."""

    PATIENT = 1
    RECEPTIONIST = 2
    NURSE = 3
    DOCTOR = 4
    ADMIN = 5

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, name: Optional[str]) -> Optional["Role"]:
        """Map a resolved role string to a Role, or ``None`` when unrecognised."""
        if not name:
            return None
        try:
            return cls[name.strip().upper()]
        except KeyError:
            return None


@dataclass(frozen=True)
class Principal:
    """Authenticated caller derived from verified token claims."""

    subject: str
    email: Optional[str]
    username: Optional[str]
    role_name: str
    role: Optional[Role]
    groups: List[str] = field(default_factory=list)

    @property
    def rank(self) -> int:
        return int(self.role) if self.role is not None else 0


class RoleResolver:
    """Derive a single role string from identity-provider claims.

    The first group wins, lower-cased with one trailing ``s`` removed so
    ``Doctors`` becomes ``doctor``. Without groups the custom role claim is
    used, and ``patient`` is the fallback.
    """

    def __init__(self, groups_claim: str = "cognito:groups", role_claim: str = "custom:role"):
        self.groups_claim = groups_claim
        self.role_claim = role_claim
        self._warned: set[str] = set()

    def _groups(self, claims: Dict[str, Any]) -> List[str]:
        raw = claims.get(self.groups_claim)
        if isinstance(raw, str):
            return [raw] if raw else []
        if isinstance(raw, (list, tuple)):
            return [str(g) for g in raw if g]
        return []

    def resolve(self, claims: Dict[str, Any]) -> str:
        groups = self._groups(claims)
        if groups:
            name = groups[0].lower()
            return name[:-1] if name.endswith("s") else name
        custom = claims.get(self.role_claim)
        if isinstance(custom, str) and custom:
            return custom.lower()
        return "patient"

    def for_user(self, user) -> str:
        """Role of a stored account, resolved the same way as its token claims."""
        claims: Dict[str, Any] = {self.groups_claim: list(user.groups)}
        if user.custom_role:
            claims[self.role_claim] = user.custom_role
        return self.resolve(claims)

    def principal(self, claims: Dict[str, Any]) -> Principal:
        role_name = self.resolve(claims)
        role = Role.parse(role_name)
        if role is None and role_name not in self._warned:
            self._warned.add(role_name)
            logger.warning("unrecognised_role", role_name=role_name, subject=claims.get("sub"))
        return Principal(
            subject=str(claims.get("sub")),
            email=claims.get("email"),
            username=claims.get("cognito:username") or claims.get("username"),
            role_name=role_name,
            role=role,
            groups=self._groups(claims),
        )
