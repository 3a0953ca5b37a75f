"""
Redemption Workflow Module - Campus Portal

Orchestrates a student's submission of an attendance code:
validate -> duplicate check -> record -> notify.

Each call is a single attempt. Every failure is terminal for that attempt
and is reported back to the caller; resubmitting starts again from IDLE.
Attempts for the same (user, date, time slot, subject) session are
serialized through a per-session lock, and the ledger's unique index
rejects anything that reaches storage twice, so concurrent submissions
produce one record and duplicate rejections for the rest.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from campus_portal.exceptions import (
    CampusPortalError,
    DuplicateError,
    StorageError,
    ValidationError,
    ValidationReason,
)
from campus_portal.modules.auth_manager import Capability, Identity


class RedemptionState(Enum):
    IDLE = 'idle'
    VALIDATING = 'validating'
    DUPLICATE_CHECKING = 'duplicate_checking'
    RECORDING = 'recording'
    REJECTED = 'rejected'
    FAILED = 'failed'
    COMMITTED = 'committed'


TERMINAL_STATES = (RedemptionState.REJECTED, RedemptionState.FAILED, RedemptionState.COMMITTED)


@dataclass
class RedemptionResult:
    """Outcome of one redemption attempt."""
    state: RedemptionState
    trail: List[RedemptionState]
    title: str
    message: str
    record: Optional[Dict[str, Any]] = None
    code: Optional[Dict[str, Any]] = None
    error: Optional[CampusPortalError] = None
    severity: str = field(default='info')

    @property
    def success(self) -> bool:
        return self.state is RedemptionState.COMMITTED

    @property
    def retryable(self) -> bool:
        return self.state is RedemptionState.FAILED

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'state': self.state.value,
            'title': self.title,
            'message': self.message,
        }
        if self.record:
            result['attendance'] = self.record
        if self.error:
            result['error_type'] = self.error.error_code
        return result


class RedemptionWorkflow:
    """
    Self-service attendance redemption.
    """

    def __init__(self, code_validator, attendance_manager, notification_system,
                 auth_manager, clock=datetime.now):
        """
        Args:
            code_validator: CodeValidator instance
            attendance_manager: AttendanceManager (ledger) instance
            notification_system: NotificationSystem for toasts
            auth_manager: AuthManager for capability checks
            clock (callable): Returns the current local time
        """
        self.validator = code_validator
        self.ledger = attendance_manager
        self.notifier = notification_system
        self.auth = auth_manager
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._locks_guard = threading.Lock()
        self._session_locks: Dict[Tuple[str, str, str, str], List[Any]] = {}

    @contextmanager
    def _session_lock(self, key: Tuple[str, str, str, str]):
        """Hold the lock for one class session key; idle locks are discarded."""
        with self._locks_guard:
            entry = self._session_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._session_locks.pop(key, None)

    def redeem(self, identity: Identity, submitted_token: str,
               now: Optional[datetime] = None) -> RedemptionResult:
        """
        Redeem a submitted attendance code for the current user.

        Args:
            identity (Identity): The submitting student
            submitted_token (str): Code typed or scanned from the staff display
            now (datetime): Submission time, defaults to the clock

        Returns:
            RedemptionResult: Terminal state and user-facing message

        Raises:
            AuthorizationError: The caller's role may not redeem codes
        """
        self.auth.require(identity, Capability.REDEEM_CODES)
        now = now or self.clock()
        trail = [RedemptionState.IDLE, RedemptionState.VALIDATING]

        try:
            code = self.validator.validate(submitted_token, now)
        except ValidationError as e:
            return self._reject(trail, e)
        except StorageError as e:
            return self._fail(trail, e)

        key = (identity.user_id, code['date'], code['time_slot'], code['class_subject'])

        with self._session_lock(key):
            trail.append(RedemptionState.DUPLICATE_CHECKING)
            try:
                existing = self.ledger.find_existing(*key)
            except StorageError as e:
                return self._fail(trail, e, code)
            if existing:
                return self._reject(trail, DuplicateError(
                    "Your attendance for this class has already been recorded.",
                    details={'existing_record_id': existing['id']}
                ), code)

            trail.append(RedemptionState.RECORDING)
            try:
                record = self.ledger.record_attendance({
                    'user_id': identity.user_id,
                    'date': code['date'],
                    'time_slot': code['time_slot'],
                    'class_subject': code['class_subject'],
                    'class_type': code['class_type'],
                    'location': code['location'],
                    'status': self.ledger.STATUS_PRESENT,
                    'marked_at': now.isoformat(timespec='seconds'),
                    'marked_by': identity.user_id,
                    'qr_code_id': code['id'],
                })
            except DuplicateError as e:
                return self._reject(trail, e, code)
            except StorageError as e:
                return self._fail(trail, e, code)

        trail.append(RedemptionState.COMMITTED)
        message = self.notifier.format_message(
            'attendance_marked',
            status=record['status'],
            class_subject=record['class_subject'],
            time_slot=record['time_slot']
        )
        self.notifier.send_toast("Attendance Marked!", message, severity='success',
                                 data={'attendance_id': record['id']},
                                 recipient_id=identity.user_id)
        self.logger.info(f"Redemption committed for user {identity.user_id} with code {code['id']}")

        return RedemptionResult(
            state=RedemptionState.COMMITTED,
            trail=trail,
            title="Attendance Marked!",
            message=message,
            record=record,
            code=code,
            severity='success'
        )

    def _reject(self, trail, error: CampusPortalError, code=None) -> RedemptionResult:
        trail.append(RedemptionState.REJECTED)

        if isinstance(error, DuplicateError):
            title, message = "Already Marked", "Your attendance for this class has already been recorded."
        elif error.reason is ValidationReason.INVALID_FORMAT:
            title, message = "Invalid Format", "The code you entered is not in a valid format."
        else:
            title, message = "Invalid Code", "The QR code is invalid, expired, or not found."

        self.logger.warning(f"Redemption rejected ({error.error_code}): {error.message}")
        return RedemptionResult(
            state=RedemptionState.REJECTED,
            trail=trail,
            title=title,
            message=message,
            code=code,
            error=error,
            severity='error'
        )

    def _fail(self, trail, error: StorageError, code=None) -> RedemptionResult:
        trail.append(RedemptionState.FAILED)
        self.logger.error(f"Redemption failed: {error.message}")
        return RedemptionResult(
            state=RedemptionState.FAILED,
            trail=trail,
            title="Error",
            message="Failed to mark attendance. Please try again.",
            code=code,
            error=error,
            severity='error'
        )
