"""
Complaint Manager Module - Campus Portal

Students and staff file complaints; wardens and administrators triage them.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from campus_portal.exceptions import InvalidInputError, ValidationError, ValidationReason
from campus_portal.modules.auth_manager import Capability, Identity


class ComplaintManager:
    """
    Complaint filing and resolution.
    """

    CATEGORIES = ('academic', 'hostel', 'infrastructure', 'library', 'transport', 'food', 'other')

    PRIORITIES = ('low', 'medium', 'high', 'urgent')

    STATUSES = ('pending', 'in_progress', 'resolved', 'closed')

    def __init__(self, database_manager, auth_manager,
                 clock: Callable[[], datetime] = datetime.now):
        self.db = database_manager
        self.auth = auth_manager
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def file_complaint(self, identity: Identity, subject: str, description: str,
                       category: str = 'academic', priority: str = 'medium') -> Dict[str, Any]:
        """
        File a complaint on behalf of the caller.

        Returns:
            Dict[str, Any]: The stored complaint with status ``pending``
        """
        self.auth.require(identity, Capability.FILE_COMPLAINTS)

        subject = (subject or '').strip()
        description = (description or '').strip()
        if not subject:
            raise InvalidInputError("Subject is required", field='subject')
        if not description:
            raise InvalidInputError("Description is required", field='description')
        if category not in self.CATEGORIES:
            raise InvalidInputError(
                f"Category must be one of: {', '.join(self.CATEGORIES)}", field='category'
            )
        if priority not in self.PRIORITIES:
            raise InvalidInputError(
                f"Priority must be one of: {', '.join(self.PRIORITIES)}", field='priority'
            )

        now = self.clock().isoformat(timespec='seconds')
        rows, error = self.db.insert('complaints', {
            'user_id': identity.user_id,
            'subject': subject,
            'description': description,
            'category': category,
            'priority': priority,
            'status': 'pending',
            'attachments': [],
            'created_at': now,
            'updated_at': now,
        })
        if error:
            self.logger.error(f"Failed to file complaint: {error.message}")
            raise error

        self.logger.info(f"Complaint filed by {identity.user_id}: {subject}")
        return rows[0]

    def list_complaints(self, identity: Identity, status: Optional[str] = None,
                        search: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List complaints newest first. Triage roles see every complaint with the
        filer embedded; everyone else sees only their own.
        """
        filters = {}
        embed = None
        if identity.can(Capability.MANAGE_COMPLAINTS):
            embed = {'filed_by': ('profiles', 'user_id')}
        else:
            filters['user_id'] = identity.user_id
        if status and status != 'all':
            filters['status'] = status

        rows, error = self.db.select('complaints', filters, order_by='created_at',
                                     descending=True, embed=embed)
        if error:
            raise error

        if search:
            term = search.lower()
            rows = [row for row in rows
                    if term in row['subject'].lower() or term in row['description'].lower()]
        return rows

    def update_status(self, identity: Identity, complaint_id: str, status: str,
                      resolution_notes: Optional[str] = None,
                      assigned_to: Optional[str] = None) -> Dict[str, Any]:
        """
        Move a complaint to a new status.

        Args:
            identity (Identity): Triage user
            complaint_id (str): Complaint id
            status (str): pending, in_progress, resolved or closed
            resolution_notes (str): Optional notes
            assigned_to (str): Optional profile id of the assignee

        Returns:
            Dict[str, Any]: The updated complaint
        """
        self.auth.require(identity, Capability.MANAGE_COMPLAINTS)

        if status not in self.STATUSES:
            raise InvalidInputError(
                f"Status must be one of: {', '.join(self.STATUSES)}", field='status'
            )

        patch = {'status': status}
        if resolution_notes is not None:
            patch['resolution_notes'] = resolution_notes
        if assigned_to is not None:
            patch['assigned_to'] = assigned_to
        if status == 'resolved':
            patch['resolved_at'] = self.clock().isoformat(timespec='seconds')

        rows, error = self.db.update('complaints', {'id': complaint_id}, patch)
        if error:
            self.logger.error(f"Failed to update complaint {complaint_id}: {error.message}")
            raise error
        if not rows:
            raise ValidationError(ValidationReason.NOT_FOUND, "Complaint not found")

        self.logger.info(f"Complaint {complaint_id} set to {status} by {identity.user_id}")
        return rows[0]
