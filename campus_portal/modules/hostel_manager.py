"""
Hostel Manager Module - Campus Portal

This module handles hostel and room administration for the campus portal.

Features:
- Hostel and room creation
- Room listings with the owning hostel
- Occupancy statistics per hostel and campus totals
- Room allocation for residents
"""

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from campus_portal.exceptions import InvalidInputError, ValidationError, ValidationReason
from campus_portal.modules.auth_manager import Capability, Identity


@dataclass
class HostelOccupancy:
    """Data structure for hostel occupancy information."""
    hostel_id: str
    hostel_name: str
    current_occupancy: int
    capacity: int
    occupancy_percentage: float
    level: str


def occupancy_level(percentage: float) -> str:
    """Classify an occupancy percentage as low, medium (70%+) or high (90%+)."""
    if percentage >= 90:
        return 'high'
    if percentage >= 70:
        return 'medium'
    return 'low'


class HostelManager:
    """
    Hostel administration: hostels, rooms, occupancy and allocation.
    """

    HOSTEL_TYPES = ('boys', 'girls', 'mixed')

    def __init__(self, database_manager, auth_manager):
        """
        Initialize the hostel manager with database connection.

        Args:
            database_manager: Database manager instance
            auth_manager: Auth manager used for capability checks
        """
        self.db = database_manager
        self.auth = auth_manager
        self.logger = logging.getLogger(__name__)
        self._allocation_lock = threading.Lock()

        self.logger.info("Hostel manager initialized")

    def create_hostel(self, identity: Identity, name: str, hostel_type: str, capacity: int,
                      address: Optional[str] = None, warden_id: Optional[str] = None,
                      amenities: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Create a new hostel.

        Args:
            identity (Identity): Caller
            name (str): Unique hostel name
            hostel_type (str): boys, girls or mixed
            capacity (int): Total beds
            address (str): Address
            warden_id (str): Profile id of the warden
            amenities (list): Amenity labels

        Returns:
            Dict[str, Any]: The stored hostel
        """
        self.auth.require(identity, Capability.MANAGE_HOSTELS)

        name = (name or '').strip()
        if not name:
            raise InvalidInputError("Hostel name is required", field='name')
        if hostel_type not in self.HOSTEL_TYPES:
            raise InvalidInputError(
                f"Hostel type must be one of: {', '.join(self.HOSTEL_TYPES)}", field='type'
            )
        capacity = self._positive_int(capacity, 'capacity')

        rows, error = self.db.insert('hostels', {
            'name': name,
            'type': hostel_type,
            'address': address,
            'capacity': capacity,
            'current_occupancy': 0,
            'warden_id': warden_id,
            'amenities': amenities or [],
        })
        if error:
            if error.is_unique_violation:
                raise InvalidInputError("Hostel name already exists", field='name')
            self.logger.error(f"Failed to create hostel: {error.message}")
            raise error

        self.logger.info(f"Hostel created successfully: {name}")
        return rows[0]

    def create_room(self, identity: Identity, hostel_id: str, room_number: str, capacity: int,
                    rent_per_month: Optional[float] = None,
                    amenities: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Create a room in a hostel. Room numbers are unique within a hostel.
        """
        self.auth.require(identity, Capability.MANAGE_HOSTELS)

        room_number = (room_number or '').strip()
        if not room_number:
            raise InvalidInputError("Room number is required", field='room_number')
        capacity = self._positive_int(capacity, 'capacity')
        self.get_hostel(hostel_id)

        rows, error = self.db.insert('rooms', {
            'hostel_id': hostel_id,
            'room_number': room_number,
            'capacity': capacity,
            'current_occupancy': 0,
            'rent_per_month': rent_per_month,
            'status': 'available',
            'amenities': amenities or [],
        })
        if error:
            if error.is_unique_violation:
                raise InvalidInputError("Room number already exists in this hostel",
                                        field='room_number')
            self.logger.error(f"Failed to create room: {error.message}")
            raise error

        self.logger.info(f"Room {room_number} created in hostel {hostel_id}")
        return rows[0]

    def get_hostel(self, hostel_id: str) -> Dict[str, Any]:
        rows, error = self.db.select('hostels', {'id': hostel_id}, limit=1)
        if error:
            raise error
        if not rows:
            raise ValidationError(ValidationReason.NOT_FOUND, "Hostel not found")
        return rows[0]

    def get_all_hostels(self) -> List[Dict[str, Any]]:
        rows, error = self.db.select('hostels', order_by='name')
        if error:
            raise error
        return rows

    def get_rooms(self, hostel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List rooms ordered by room number, each with ``hostel`` set to the
        owning hostel's name.
        """
        filters = {'hostel_id': hostel_id} if hostel_id else None
        rows, error = self.db.select('rooms', filters, order_by='room_number',
                                     embed={'hostel': ('hostels', 'hostel_id')})
        if error:
            raise error
        for row in rows:
            row['hostel'] = {'name': row['hostel']['name']} if row['hostel'] else None
        return rows

    def get_occupancy_stats(self) -> List[Dict[str, Any]]:
        """
        Get occupancy statistics per hostel.

        Returns:
            List[Dict[str, Any]]: One HostelOccupancy dict per hostel
        """
        stats = []
        for hostel in self.get_all_hostels():
            capacity = hostel['capacity'] or 0
            occupancy = hostel['current_occupancy'] or 0
            percentage = round(occupancy * 100.0 / capacity, 1) if capacity else 0.0
            stats.append(asdict(HostelOccupancy(
                hostel_id=hostel['id'],
                hostel_name=hostel['name'],
                current_occupancy=occupancy,
                capacity=capacity,
                occupancy_percentage=percentage,
                level=occupancy_level(percentage),
            )))
        return stats

    def get_campus_totals(self) -> Dict[str, Any]:
        """Total capacity, occupancy and occupancy percentage across hostels."""
        row = self.db.execute_query(
            """SELECT COUNT(*) AS hostel_count,
                      COALESCE(SUM(capacity), 0) AS total_capacity,
                      COALESCE(SUM(current_occupancy), 0) AS total_occupancy
               FROM hostels""",
            fetch_all=False
        )
        capacity = row['total_capacity']
        row['occupancy_percentage'] = (
            round(row['total_occupancy'] * 100.0 / capacity, 1) if capacity else 0.0
        )
        row['level'] = occupancy_level(row['occupancy_percentage'])
        return row

    def allocate_room(self, identity: Identity, profile_id: str, room_id: str) -> Dict[str, Any]:
        """
        Allocate a room to a resident.

        Increments the room and hostel occupancy and records the hostel and
        room number on the resident's profile. A resident moving from another
        room releases that room first.

        Returns:
            Dict[str, Any]: The updated room

        Raises:
            ValidationError: Unknown room
            InvalidInputError: Unknown resident, room full or already allocated
        """
        self.auth.require(identity, Capability.MANAGE_HOSTELS)

        with self._allocation_lock:
            rooms, error = self.db.select('rooms', {'id': room_id}, limit=1)
            if error:
                raise error
            if not rooms:
                raise ValidationError(ValidationReason.NOT_FOUND, "Room not found")
            room = rooms[0]

            profiles, error = self.db.select('profiles', {'id': profile_id}, limit=1)
            if error:
                raise error
            if not profiles:
                raise InvalidInputError("Resident not found", field='profile_id')
            profile = profiles[0]

            if (profile['hostel_id'] == room['hostel_id']
                    and profile['room_number'] == room['room_number']):
                raise InvalidInputError("Resident is already allocated to this room",
                                        field='room_id')
            if room['current_occupancy'] >= room['capacity']:
                raise InvalidInputError("Room is full", field='room_id')

            if profile['hostel_id'] and profile['room_number']:
                self._release_room(profile['hostel_id'], profile['room_number'])

            occupancy = room['current_occupancy'] + 1
            updated, error = self.db.update('rooms', {'id': room_id}, {
                'current_occupancy': occupancy,
                'status': 'full' if occupancy >= room['capacity'] else 'available',
            })
            if error:
                raise error

            hostel = self.get_hostel(room['hostel_id'])
            _, error = self.db.update('hostels', {'id': hostel['id']},
                                      {'current_occupancy': hostel['current_occupancy'] + 1})
            if error:
                raise error

            _, error = self.db.update('profiles', {'id': profile_id}, {
                'hostel_id': room['hostel_id'],
                'room_number': room['room_number'],
            })
            if error:
                raise error

        self.logger.info(f"Room {room['room_number']} allocated to {profile_id}")
        return updated[0]

    def _release_room(self, hostel_id: str, room_number: str) -> None:
        rooms, error = self.db.select('rooms', {'hostel_id': hostel_id, 'room_number': room_number},
                                      limit=1)
        if error:
            raise error
        if not rooms:
            return
        room = rooms[0]

        _, error = self.db.update('rooms', {'id': room['id']}, {
            'current_occupancy': max(room['current_occupancy'] - 1, 0),
            'status': 'available',
        })
        if error:
            raise error

        hostel = self.get_hostel(hostel_id)
        _, error = self.db.update('hostels', {'id': hostel_id},
                                  {'current_occupancy': max(hostel['current_occupancy'] - 1, 0)})
        if error:
            raise error

        self.logger.info(f"Room {room_number} in hostel {hostel_id} released")

    @staticmethod
    def _positive_int(value, field: str) -> int:
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise InvalidInputError(f"{field.replace('_', ' ').capitalize()} must be a number",
                                    field=field)
        if value <= 0:
            raise InvalidInputError(f"{field.replace('_', ' ').capitalize()} must be positive",
                                    field=field)
        return value
