"""
Code Validator Module - Campus Portal

Checks a submitted attendance token against the stored code's own state.
Being active and being unexpired are independent gates: a code must pass
both, and a deactivated code is reported as inactive whatever its expiry.
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from campus_portal.exceptions import ValidationError, ValidationReason

TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9]{1,64}$')


class CodeValidator:
    """Validates submitted attendance tokens."""

    def __init__(self, database_manager, clock: Callable[[], datetime] = datetime.now):
        self.db = database_manager
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def validate(self, submitted_token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Validate a submitted token.

        Args:
            submitted_token (str): Token typed or scanned by the student
            now (datetime): Validation time, defaults to the clock

        Returns:
            Dict[str, Any]: The full attendance code record

        Raises:
            ValidationError: INVALID_FORMAT, NOT_FOUND, INACTIVE or EXPIRED
            StorageError: Store failure during lookup
        """
        token = (submitted_token or '').strip()
        if not TOKEN_PATTERN.match(token):
            raise ValidationError(ValidationReason.INVALID_FORMAT,
                                  "The code format is invalid.")

        rows, error = self.db.select('attendance_qr_codes', {'code': token}, limit=1)
        if error:
            self.logger.error(f"Code lookup failed: {error.message}")
            raise error
        if not rows:
            raise ValidationError(ValidationReason.NOT_FOUND,
                                  "The QR code was not found.")

        code = rows[0]
        if not code['is_active']:
            raise ValidationError(ValidationReason.INACTIVE,
                                  "The QR code is no longer active.",
                                  details={'code_id': code['id']})

        now = now or self.clock()
        if now > datetime.fromisoformat(code['expires_at']):
            raise ValidationError(ValidationReason.EXPIRED,
                                  "The QR code has expired.",
                                  details={'code_id': code['id'],
                                           'expires_at': code['expires_at']})

        return code
