"""Read-only organizational queries used by approver routing.

Every lookup only considers active users and resolves "first" by ascending
user id, so identical org data always yields identical answers. Absence is
reported as ``None`` or an empty list; callers decide on fallbacks.
"""
from __future__ import annotations

from typing import List, Optional

from claimflow.models import User, UserRole


class OrgLookup:
    """Identity and hierarchy lookups over the local user table."""

    @staticmethod
    def get_user(user_id: int) -> Optional[User]:
        return User.get(user_id)

    @staticmethod
    def get_user_by_email(email: str) -> Optional[User]:
        return User.find_by_email(email)

    @staticmethod
    def find_active_by_email(email: Optional[str]) -> Optional[User]:
        if not email:
            return None
        return User.find_by_email(email, active_only=True)

    @staticmethod
    def find_direct_manager(person_id: int) -> Optional[User]:
        person = User.get(person_id)
        if person is None or person.manager_id is None:
            return None
        manager = User.get(person.manager_id)
        if manager is None or not manager.is_active:
            return None
        return manager

    @staticmethod
    def find_department_lead(department: Optional[str], role: UserRole = UserRole.MANAGER) -> Optional[User]:
        if not department:
            return None
        leads = User.find_active_by_department_and_role(department, role)
        return leads[0] if leads else None

    @staticmethod
    def find_by_title(title: str) -> List[User]:
        return User.find_active_by_title(title)

    @staticmethod
    def find_first_by_title(title: str) -> Optional[User]:
        holders = User.find_active_by_title(title)
        return holders[0] if holders else None

    @staticmethod
    def find_active_by_department_and_title(department: str, title: str) -> List[User]:
        return User.find_active_by_department_and_title(department, title)


org_lookup = OrgLookup()
