"""
Event Manager Module - Campus Portal

This module handles campus events and student registrations.

Features:
- Event creation by organizers
- Event listing with status filter and text search
- Registration with deadline and capacity checks
- A user's registrations with the event details
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from campus_portal.exceptions import (
    DuplicateError,
    InvalidInputError,
    ValidationError,
    ValidationReason,
)
from campus_portal.modules.auth_manager import Capability, Identity


def _parse_datetime(value, field: str) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise InvalidInputError(f"Invalid date/time for {field}: {value}", field=field)


class EventManager:
    """
    Campus event management.
    """

    EVENT_TYPES = ('academic', 'cultural', 'sports', 'technical', 'workshop', 'seminar', 'other')

    EVENT_STATUSES = ('upcoming', 'ongoing', 'completed', 'cancelled')

    def __init__(self, database_manager, auth_manager,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the event manager with database connection.

        Args:
            database_manager: Database manager instance
            auth_manager: Auth manager used for capability checks
            clock (callable): Returns the current local time
        """
        self.db = database_manager
        self.auth = auth_manager
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._registration_lock = threading.Lock()

    def create_event(self, identity: Identity, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a new event organized by the caller.

        Args:
            identity (Identity): Organizer
            data (dict): title, description, event_type, start_date, end_date,
                location, capacity, registration_required

        Returns:
            Dict[str, Any]: The stored event
        """
        self.auth.require(identity, Capability.MANAGE_EVENTS)

        title = (data.get('title') or '').strip()
        if not title:
            raise InvalidInputError("Event title is required", field='title')

        event_type = (data.get('event_type') or 'academic').strip().lower()
        if event_type not in self.EVENT_TYPES:
            raise InvalidInputError(
                f"Event type must be one of: {', '.join(self.EVENT_TYPES)}", field='event_type'
            )

        if not data.get('start_date') or not data.get('end_date'):
            raise InvalidInputError("Start and end dates are required", field='start_date')
        start = _parse_datetime(data['start_date'], 'start_date')
        end = _parse_datetime(data['end_date'], 'end_date')
        if end < start:
            raise InvalidInputError("Event cannot end before it starts", field='end_date')

        capacity = data.get('capacity')
        if capacity in ('', None):
            capacity = None
        else:
            try:
                capacity = int(capacity)
            except (TypeError, ValueError):
                raise InvalidInputError("Capacity must be a number", field='capacity')
            if capacity <= 0:
                raise InvalidInputError("Capacity must be positive", field='capacity')

        registration_required = bool(data.get('registration_required', True))

        record = {
            'title': title,
            'description': data.get('description'),
            'event_type': event_type,
            'start_date': start.isoformat(timespec='seconds'),
            'end_date': end.isoformat(timespec='seconds'),
            'location': data.get('location'),
            'capacity': capacity,
            'registered_count': 0,
            'registration_required': registration_required,
            'registration_deadline': start.isoformat(timespec='seconds') if registration_required else None,
            'organizer_id': identity.user_id,
            'status': 'upcoming',
        }

        rows, error = self.db.insert('events', record)
        if error:
            self.logger.error(f"Failed to create event: {error.message}")
            raise error

        self.logger.info(f"Event created: {title} by {identity.user_id}")
        return rows[0]

    def list_events(self, status: Optional[str] = None,
                    search: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List events by start date, optionally filtered by status and a search
        term matched against title, description and location.
        """
        filters = {}
        if status and status != 'all':
            if status not in self.EVENT_STATUSES:
                raise InvalidInputError(
                    f"Status must be one of: {', '.join(self.EVENT_STATUSES)}", field='status'
                )
            filters['status'] = status

        rows, error = self.db.select('events', filters, order_by='start_date')
        if error:
            raise error

        if search:
            term = search.lower()
            rows = [
                row for row in rows
                if any(term in (row.get(column) or '').lower()
                       for column in ('title', 'description', 'location'))
            ]
        return rows

    def get_event(self, event_id: str) -> Dict[str, Any]:
        rows, error = self.db.select('events', {'id': event_id}, limit=1)
        if error:
            raise error
        if not rows:
            raise ValidationError(ValidationReason.NOT_FOUND, "Event not found")
        return rows[0]

    @staticmethod
    def is_full(event: Dict[str, Any]) -> bool:
        return bool(event['capacity']) and event['registered_count'] >= event['capacity']

    def is_registration_open(self, event: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        if not event['registration_required']:
            return False
        deadline = event['registration_deadline'] or event['start_date']
        return (now or self.clock()) <= datetime.fromisoformat(deadline)

    def register(self, identity: Identity, event_id: str,
                 now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Register the caller for an event.

        Returns:
            Dict[str, Any]: The stored registration

        Raises:
            ValidationError: Unknown event
            InvalidInputError: Registration closed or event full
            DuplicateError: Already registered
        """
        self.auth.require(identity, Capability.REGISTER_EVENTS)
        now = now or self.clock()

        with self._registration_lock:
            event = self.get_event(event_id)

            if not self.is_registration_open(event, now):
                raise InvalidInputError("Registration for this event is closed", field='event_id')
            if self.is_full(event):
                raise InvalidInputError("This event is full", field='event_id')

            rows, error = self.db.insert('event_registrations', {
                'event_id': event_id,
                'user_id': identity.user_id,
                'registration_date': now.isoformat(timespec='seconds'),
                'attendance_status': 'registered',
            })
            if error:
                if error.is_unique_violation:
                    raise DuplicateError("You are already registered for this event.")
                self.logger.error(f"Failed to register for event {event_id}: {error.message}")
                raise error

            _, error = self.db.update('events', {'id': event_id},
                                      {'registered_count': event['registered_count'] + 1})
            if error:
                self.logger.error(f"Failed to update registration count for {event_id}: {error.message}")
                raise error

        self.logger.info(f"User {identity.user_id} registered for event {event_id}")
        return rows[0]

    def my_registrations(self, identity: Identity) -> List[Dict[str, Any]]:
        """A user's registrations, newest first, each with its event embedded."""
        rows, error = self.db.select(
            'event_registrations',
            {'user_id': identity.user_id},
            order_by='registration_date',
            descending=True,
            embed={'event': ('events', 'event_id')}
        )
        if error:
            raise error
        return rows
