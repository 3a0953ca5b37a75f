"""
Attendance Manager Module - Campus Portal

This module is the attendance ledger. It records one attendance entry per
(user, date, time slot, subject) and answers the read queries behind the
student and staff attendance views.

A write is preceded by an existence check on the session key and is backed
by the store's unique index over the same key, so a record that slips past
the check still cannot be written twice.

Features:
- Attendance recording with duplicate detection
- Manual marking by staff against an issued code
- Today's records for a student
- Per-date records with student details for staff
- Per-subject attendance statistics
- Daily status summary
"""

from datetime import datetime
import logging
from typing import Dict, List, Optional, Any

from campus_portal.exceptions import (
    DuplicateError,
    InvalidInputError,
    ValidationError,
    ValidationReason,
)
from campus_portal.modules.auth_manager import Capability, Identity


class AttendanceManager:
    """
    Attendance ledger for QR code and manual attendance.
    """

    STATUS_PRESENT = 'present'
    STATUS_LATE = 'late'
    STATUS_ABSENT = 'absent'

    VALID_STATUSES = (STATUS_PRESENT, STATUS_LATE, STATUS_ABSENT)

    REQUIRED_FIELDS = ('user_id', 'date', 'time_slot', 'class_subject', 'class_type')

    def __init__(self, database_manager, auth_manager, clock=datetime.now):
        """
        Initialize the attendance manager with database connection.

        Args:
            database_manager: Database manager instance
            auth_manager: Auth manager used for capability checks
            clock (callable): Returns the current local time
        """
        self.db = database_manager
        self.auth = auth_manager
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def find_existing(self, user_id: str, date: str, time_slot: str,
                      class_subject: str) -> Optional[Dict[str, Any]]:
        """
        Look up the attendance record for one class session.

        Args:
            user_id (str): Student profile id
            date (str): Date string (YYYY-MM-DD)
            time_slot (str): Time slot label
            class_subject (str): Subject name

        Returns:
            Dict[str, Any]: Existing attendance record or None
        """
        rows, error = self.db.select(
            'attendance',
            {
                'user_id': user_id,
                'date': date,
                'time_slot': time_slot,
                'class_subject': class_subject,
            },
            limit=1
        )
        if error:
            self.logger.error(f"Failed to check existing attendance: {error.message}")
            raise error
        return rows[0] if rows else None

    def record_attendance(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record an attendance entry.

        Args:
            entry (dict): user_id, date, time_slot, class_subject, class_type and
                optionally status, location, marked_by, qr_code_id, marked_at

        Returns:
            Dict[str, Any]: The stored attendance record

        Raises:
            DuplicateError: A record already exists for the session
            InvalidInputError: Missing fields or unknown status
            StorageError: Store failure
        """
        missing = [field for field in self.REQUIRED_FIELDS if not entry.get(field)]
        if missing:
            raise InvalidInputError(f"Missing required fields: {', '.join(missing)}",
                                    field=missing[0])

        status = entry.get('status') or self.STATUS_PRESENT
        if status not in self.VALID_STATUSES:
            raise InvalidInputError(f"Invalid attendance status: {status}", field='status')

        existing = self.find_existing(entry['user_id'], entry['date'],
                                      entry['time_slot'], entry['class_subject'])
        if existing:
            raise DuplicateError(
                "Attendance for this class has already been recorded.",
                details={'existing_record_id': existing['id']}
            )

        record = {
            'user_id': entry['user_id'],
            'date': entry['date'],
            'time_slot': entry['time_slot'],
            'class_subject': entry['class_subject'],
            'class_type': entry['class_type'],
            'status': status,
            'location': entry.get('location'),
            'marked_at': entry.get('marked_at') or self.clock().isoformat(timespec='seconds'),
            'marked_by': entry.get('marked_by'),
            'qr_code_id': entry.get('qr_code_id'),
        }

        rows, error = self.db.insert('attendance', record)
        if error:
            if error.is_unique_violation:
                raise DuplicateError("Attendance for this class has already been recorded.")
            self.logger.error(f"Failed to record attendance: {error.message}")
            raise error

        stored = rows[0]
        self.logger.info(
            f"Attendance recorded: user {stored['user_id']}, {stored['class_subject']} "
            f"{stored['time_slot']} on {stored['date']}, status {stored['status']}"
        )
        return stored

    def mark_manually(self, identity: Identity, code_id: str, student_id: str,
                      status: str) -> Dict[str, Any]:
        """
        Mark a student's attendance for the session behind an issued code.

        Args:
            identity (Identity): Staff member marking attendance
            code_id (str): Attendance code record id identifying the session
            student_id (str): Student profile id
            status (str): present, late or absent

        Returns:
            Dict[str, Any]: The stored attendance record
        """
        self.auth.require(identity, Capability.MARK_ATTENDANCE_MANUALLY)

        rows, error = self.db.select('attendance_qr_codes', {'id': code_id}, limit=1)
        if error:
            raise error
        if not rows:
            raise ValidationError(ValidationReason.NOT_FOUND, "Attendance code not found")
        code = rows[0]

        students, error = self.db.select('profiles', {'id': student_id}, limit=1)
        if error:
            raise error
        if not students:
            raise InvalidInputError("Student not found", field='student_id')

        return self.record_attendance({
            'user_id': student_id,
            'date': code['date'],
            'time_slot': code['time_slot'],
            'class_subject': code['class_subject'],
            'class_type': code['class_type'],
            'location': code['location'],
            'status': status,
            'marked_by': identity.user_id,
            'qr_code_id': code['id'],
        })

    def get_today_attendance(self, user_id: str, date: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get a student's attendance records for a date (default today), newest first.
        """
        rows, error = self.db.select(
            'attendance',
            {'user_id': user_id, 'date': date or self.clock().date().isoformat()},
            order_by='marked_at',
            descending=True
        )
        if error:
            raise error
        return rows

    def get_attendance_for_date(self, identity: Identity,
                                date: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get every attendance record for a date with the student profile embedded.
        """
        self.auth.require(identity, Capability.VIEW_ALL_ATTENDANCE)
        rows, error = self.db.select(
            'attendance',
            {'date': date or self.clock().date().isoformat()},
            order_by='marked_at',
            descending=True,
            embed={'student': ('profiles', 'user_id')}
        )
        if error:
            raise error

        for row in rows:
            student = row['student'] or {}
            row['student'] = {
                'full_name': student.get('full_name'),
                'student_id': student.get('student_id'),
            }
        return rows

    def get_subject_statistics(self, user_id: str) -> List[Dict[str, Any]]:
        """
        Get per-subject attendance statistics for a student.

        Late arrivals count as attended.

        Returns:
            List[Dict[str, Any]]: subject, attended, total and percentage per subject
        """
        rows = self.db.execute_query(
            """SELECT class_subject AS subject,
                      SUM(CASE WHEN status IN ('present', 'late') THEN 1 ELSE 0 END) AS attended,
                      COUNT(*) AS total
               FROM attendance
               WHERE user_id = ?
               GROUP BY class_subject
               ORDER BY class_subject""",
            (user_id,)
        )
        for row in rows:
            row['percentage'] = round(row['attended'] * 100.0 / row['total'], 1) if row['total'] else 0.0
        return rows

    def get_daily_summary(self, date: Optional[str] = None) -> Dict[str, Any]:
        """
        Get the attendance summary for a date (default today).

        Returns:
            Dict[str, Any]: Totals, status breakdown and subject breakdown
        """
        date = date or self.clock().date().isoformat()

        status_rows = self.db.execute_query(
            """SELECT status, COUNT(*) AS count
               FROM attendance
               WHERE date = ?
               GROUP BY status""",
            (date,)
        )
        subject_rows = self.db.execute_query(
            """SELECT class_subject, time_slot, COUNT(*) AS attendance_count
               FROM attendance
               WHERE date = ?
               GROUP BY class_subject, time_slot
               ORDER BY time_slot""",
            (date,)
        )

        status_breakdown = {status: 0 for status in self.VALID_STATUSES}
        for row in status_rows:
            status_breakdown[row['status']] = row['count']

        return {
            'date': date,
            'total_records': sum(status_breakdown.values()),
            'status_breakdown': status_breakdown,
            'subject_breakdown': subject_rows,
        }
