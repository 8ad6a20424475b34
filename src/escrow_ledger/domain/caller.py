"""The authenticated principal on whose behalf an operation runs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from escrow_ledger.domain.enums import UserRole


@dataclass(frozen=True)
class Caller:
    """Identity supplied by the external identity provider.

    Attributes:
        user_id: The calling user's id. None only for the SYSTEM actor.
        role: The caller's role.
    """

    user_id: uuid.UUID | None
    role: UserRole

    @classmethod
    def system(cls) -> Caller:
        """Actor used by webhook reconciliation and background sweeps."""
        return cls(user_id=None, role=UserRole.SYSTEM)

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SYSTEM)

    @property
    def actor(self) -> str:
        """Audit actor label: the user id, or SYSTEM."""
        return str(self.user_id) if self.user_id else UserRole.SYSTEM.value

    def is_user(self, user_id: uuid.UUID | None) -> bool:
        return user_id is not None and self.user_id == user_id
