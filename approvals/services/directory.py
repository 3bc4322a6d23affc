# ==== APPROVER DIRECTORY ==== #

"""
Approver directory seam for the workflow engine.

Users, departments and role assignments are owned by an external master
data service. The engine only needs three lookups from it: which roles a
user holds, who holds a role and who a user's manager is. The static
implementation is seeded from settings and serves local runs and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from approvals.settings import Settings, get_settings


@dataclass(frozen=True)
class DirectoryUser:
    """A user as seen by the workflow engine."""
    user_id: str
    display_name: Optional[str] = None


class ApproverDirectory(ABC):
    """Read-only view of users, roles and reporting lines."""

    @abstractmethod
    def roles_for(self, user_id: str) -> FrozenSet[str]:
        """Roles held by ``user_id`` (empty when unknown)."""

    @abstractmethod
    def users_with_role(self, role: str) -> List[DirectoryUser]:
        """Users holding ``role``, in a stable order."""

    @abstractmethod
    def manager_of(self, user_id: str) -> Optional[DirectoryUser]:
        """Direct manager of ``user_id``, if any."""

    @abstractmethod
    def display_name(self, user_id: str) -> Optional[str]:
        """Human readable name for ``user_id``, if known."""

    def resolve_role(self, role: str) -> Optional[DirectoryUser]:
        """First holder of ``role`` or None when nobody holds it."""
        holders = self.users_with_role(role)
        return holders[0] if holders else None


class StaticApproverDirectory(ApproverDirectory):
    """
    In-process directory built from plain mappings.

    Args:
        role_assignments: user id -> roles held
        managers: user id -> manager user id
        display_names: user id -> display name
    """

    def __init__(
        self,
        role_assignments: Mapping[str, Iterable[str]] | None = None,
        managers: Mapping[str, str] | None = None,
        display_names: Mapping[str, str] | None = None,
    ):
        self._roles: Dict[str, FrozenSet[str]] = {
            user_id: frozenset(roles) for user_id, roles in (role_assignments or {}).items()
        }
        self._managers: Dict[str, str] = dict(managers or {})
        self._names: Dict[str, str] = dict(display_names or {})

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "StaticApproverDirectory":
        settings = settings or get_settings()
        return cls(
            role_assignments=settings.DIRECTORY_ROLE_ASSIGNMENTS,
            managers=settings.DIRECTORY_MANAGERS,
            display_names=settings.DIRECTORY_DISPLAY_NAMES,
        )

    def roles_for(self, user_id: str) -> FrozenSet[str]:
        return self._roles.get(user_id, frozenset())

    def users_with_role(self, role: str) -> List[DirectoryUser]:
        return [
            DirectoryUser(user_id, self._names.get(user_id))
            for user_id in sorted(self._roles)
            if role in self._roles[user_id]
        ]

    def manager_of(self, user_id: str) -> Optional[DirectoryUser]:
        manager_id = self._managers.get(user_id)
        if manager_id is None:
            return None
        return DirectoryUser(manager_id, self._names.get(manager_id))

    def display_name(self, user_id: str) -> Optional[str]:
        return self._names.get(user_id)
