"""
Authentication Manager Module - Campus Portal

This module resolves the identity supplied by the external identity provider
into a request-scoped ``Identity`` value and answers authorization questions
for it. Credentials are never checked here: the provider has already
authenticated the user, and row-level rules are enforced by the store.

Roles form a closed enumeration and every role has an explicit capability
set, so permission checks never compare role strings at call sites.

Features:
- Role enumeration and capability table
- Identity resolution from the profiles table
- Capability checks that raise AuthorizationError
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from campus_portal.exceptions import AuthorizationError


class Role(Enum):
    STUDENT = 'student'
    TEACHER = 'teacher'
    STAFF = 'staff'
    WARDEN = 'warden'
    ADMIN = 'admin'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'Role':
        """Map a stored role string to a Role; unknown or empty values are students."""
        try:
            return cls((value or '').strip().lower())
        except ValueError:
            return cls.STUDENT


class Capability(Enum):
    ISSUE_CODES = 'issue_codes'
    MARK_ATTENDANCE_MANUALLY = 'mark_attendance_manually'
    REDEEM_CODES = 'redeem_codes'
    VIEW_ALL_ATTENDANCE = 'view_all_attendance'
    EXPORT_ATTENDANCE = 'export_attendance'
    MANAGE_EVENTS = 'manage_events'
    REGISTER_EVENTS = 'register_events'
    FILE_COMPLAINTS = 'file_complaints'
    MANAGE_COMPLAINTS = 'manage_complaints'
    MANAGE_HOSTELS = 'manage_hostels'
    VIEW_STUDENTS = 'view_students'


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.STUDENT: frozenset({
        Capability.REDEEM_CODES,
        Capability.REGISTER_EVENTS,
        Capability.FILE_COMPLAINTS,
    }),
    Role.TEACHER: frozenset({
        Capability.ISSUE_CODES,
        Capability.MARK_ATTENDANCE_MANUALLY,
        Capability.VIEW_ALL_ATTENDANCE,
        Capability.EXPORT_ATTENDANCE,
        Capability.MANAGE_EVENTS,
        Capability.REGISTER_EVENTS,
        Capability.VIEW_STUDENTS,
    }),
    Role.STAFF: frozenset({
        Capability.ISSUE_CODES,
        Capability.MARK_ATTENDANCE_MANUALLY,
        Capability.VIEW_ALL_ATTENDANCE,
        Capability.EXPORT_ATTENDANCE,
        Capability.REGISTER_EVENTS,
        Capability.FILE_COMPLAINTS,
        Capability.VIEW_STUDENTS,
    }),
    Role.WARDEN: frozenset({
        Capability.REGISTER_EVENTS,
        Capability.FILE_COMPLAINTS,
        Capability.MANAGE_COMPLAINTS,
        Capability.MANAGE_HOSTELS,
        Capability.VIEW_STUDENTS,
    }),
    Role.ADMIN: frozenset(Capability),
}

_missing_roles = set(Role) - set(ROLE_CAPABILITIES)
if _missing_roles:
    raise RuntimeError(f"Roles without a capability set: {sorted(r.value for r in _missing_roles)}")


@dataclass(frozen=True)
class Identity:
    """Request-scoped identity of the current user."""
    user_id: str
    role: Role
    full_name: str = ''
    email: str = ''

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES[self.role]


class AuthManager:
    """
    Resolves identities and enforces capabilities.
    """

    def __init__(self, database_manager):
        """
        Initialize the authentication manager with database connection.

        Args:
            database_manager: Database manager instance
        """
        self.db = database_manager
        self.logger = logging.getLogger(__name__)

    def resolve_identity(self, auth_user_id: str) -> Optional[Identity]:
        """
        Build the Identity for a user id issued by the identity provider.

        Args:
            auth_user_id (str): Provider user id (``profiles.user_id``)

        Returns:
            Identity: Resolved identity, or None when no profile exists
        """
        if not auth_user_id:
            return None

        rows, error = self.db.select('profiles', {'user_id': auth_user_id}, limit=1)
        if error:
            self.logger.error(f"Failed to resolve identity {auth_user_id}: {error.message}")
            raise error
        if not rows:
            self.logger.warning(f"No profile found for user {auth_user_id}")
            return None

        profile = rows[0]
        return Identity(
            user_id=profile['id'],
            role=Role.parse(profile.get('role')),
            full_name=profile.get('full_name') or '',
            email=profile.get('email') or '',
        )

    def require(self, identity: Optional[Identity], capability: Capability) -> Identity:
        """
        Ensure the identity holds a capability.

        Raises:
            AuthorizationError: When the identity is missing or lacks the capability
        """
        if identity is None:
            raise AuthorizationError("Authentication required", capability=capability.value)
        if not identity.can(capability):
            self.logger.warning(
                f"Denied {capability.value} for user {identity.user_id} ({identity.role.value})"
            )
            raise AuthorizationError(
                f"Role '{identity.role.value}' may not {capability.value.replace('_', ' ')}",
                capability=capability.value
            )
        return identity

    def get_capabilities(self, role: Role) -> FrozenSet[Capability]:
        return ROLE_CAPABILITIES[role]
