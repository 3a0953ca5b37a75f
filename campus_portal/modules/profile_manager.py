"""
Profile Manager Module - Campus Portal

This module handles user profiles for the campus portal. A profile is
created for every user the identity provider knows about and carries the
role, academic details and hostel placement shown across the portal.

Features:
- Profile creation with validation
- Self-service profile updates limited to editable fields
- Student directory search for staff
"""

import logging
import re
from typing import Any, Dict, List, Optional

from campus_portal.exceptions import InvalidInputError, ValidationError, ValidationReason
from campus_portal.modules.auth_manager import Capability, Identity, Role

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_PATTERN = re.compile(r'^\+?[\d\s\-()]{7,20}$')


class ProfileManager:
    """
    Profile management for students and staff.
    """

    EDITABLE_FIELDS = ('full_name', 'phone', 'department', 'year',
                       'hostel_id', 'room_number', 'student_id')

    YEAR_LEVELS = {
        1: '1st Year',
        2: '2nd Year',
        3: '3rd Year',
        4: '4th Year',
        5: '5th Year'
    }

    def __init__(self, database_manager, auth_manager):
        """
        Initialize the profile manager with database connection.

        Args:
            database_manager: Database manager instance
            auth_manager: Auth manager used for capability checks
        """
        self.db = database_manager
        self.auth = auth_manager
        self.logger = logging.getLogger(__name__)

    def create_profile(self, user_id: str, full_name: str, email: str,
                       role: Role = Role.STUDENT, **details) -> Dict[str, Any]:
        """
        Create a profile for a user of the identity provider.

        Args:
            user_id (str): Provider user id
            full_name (str): Display name
            email (str): Unique email address
            role (Role): Portal role
            **details: Any of EDITABLE_FIELDS

        Returns:
            Dict[str, Any]: The stored profile
        """
        if not user_id:
            raise InvalidInputError("User id is required", field='user_id')
        if not (full_name or '').strip():
            raise InvalidInputError("Full name is required", field='full_name')
        if not EMAIL_PATTERN.match(email or ''):
            raise InvalidInputError("Invalid email format", field='email')

        record = {'user_id': user_id, 'full_name': full_name.strip(),
                  'email': email.lower(), 'role': Role(role).value}
        record.update(self._clean_details(details))

        rows, error = self.db.insert('profiles', record)
        if error:
            if error.is_unique_violation:
                raise InvalidInputError("A profile with this user id or email already exists",
                                        field='email')
            self.logger.error(f"Profile creation failed for {user_id}: {error.message}")
            raise error

        self.logger.info(f"Profile created successfully: {user_id} ({record['role']})")
        return rows[0]

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get a profile by provider user id, or None."""
        rows, error = self.db.select('profiles', {'user_id': user_id}, limit=1)
        if error:
            raise error
        return rows[0] if rows else None

    def update_profile(self, identity: Identity, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update the caller's own profile.

        Only EDITABLE_FIELDS may change; role and email are managed elsewhere.

        Returns:
            Dict[str, Any]: The updated profile
        """
        rejected = sorted(set(patch) - set(self.EDITABLE_FIELDS))
        if rejected:
            raise InvalidInputError(f"Fields cannot be updated: {', '.join(rejected)}",
                                    field=rejected[0])
        if 'full_name' in patch and not (patch['full_name'] or '').strip():
            raise InvalidInputError("Full name is required", field='full_name')

        rows, error = self.db.update('profiles', {'id': identity.user_id},
                                     self._clean_details(patch, keep_empty=True))
        if error:
            self.logger.error(f"Profile update failed for {identity.user_id}: {error.message}")
            raise error
        if not rows:
            raise ValidationError(ValidationReason.NOT_FOUND, "Profile not found")

        self.logger.info(f"Profile updated: {identity.user_id}")
        return rows[0]

    def list_students(self, identity: Identity, search: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List student profiles by name, optionally matching a search term against
        name, student number and department.
        """
        self.auth.require(identity, Capability.VIEW_STUDENTS)

        rows, error = self.db.select('profiles', {'role': Role.STUDENT.value}, order_by='full_name')
        if error:
            raise error

        if search:
            term = search.lower()
            rows = [
                row for row in rows
                if any(term in (row.get(column) or '').lower()
                       for column in ('full_name', 'student_id', 'department', 'email'))
            ]
        return rows

    def _clean_details(self, details: Dict[str, Any], keep_empty: bool = False) -> Dict[str, Any]:
        cleaned = {}
        for field, value in details.items():
            if field not in self.EDITABLE_FIELDS:
                raise InvalidInputError(f"Unknown profile field: {field}", field=field)
            if isinstance(value, str):
                value = value.strip()
            if value in ('', None):
                if keep_empty:
                    cleaned[field] = None
                continue
            if field == 'year':
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    raise InvalidInputError("Year must be a number", field='year')
                if value not in self.YEAR_LEVELS:
                    raise InvalidInputError("Year must be between 1 and 5", field='year')
            if field == 'phone' and not PHONE_PATTERN.match(value):
                raise InvalidInputError("Invalid phone number format", field='phone')
            cleaned[field] = value
        return cleaned
