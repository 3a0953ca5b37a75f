"""
QR Code Generator Module - Campus Portal

This module issues time-boxed attendance codes for class sessions and
renders them as QR images for display in the classroom. A code is an opaque
random token; the record stored with it carries the subject, session type,
time slot and location that a redemption copies onto the attendance record.

Features:
- Random base36 token generation
- Attendance code issuance with expiry
- Deactivation by the issuing staff member
- QR code image rendering with an optional caption
- Listing of today's codes and of currently redeemable codes
"""

import qrcode
import io
import base64
import secrets
import string
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from PIL import Image, ImageDraw, ImageFont

from campus_portal.exceptions import (
    InvalidInputError,
    ValidationError,
    ValidationReason,
    AuthorizationError,
)
from campus_portal.modules.auth_manager import Capability, Identity, Role

BASE36_ALPHABET = string.digits + string.ascii_uppercase

SESSION_TYPES = ('lecture', 'practical', 'tutorial', 'seminar')

MIN_TOKEN_BYTES = 10


def generate_token(num_bytes: int = 12) -> str:
    """
    Generate an opaque base36 token from ``num_bytes`` random bytes.

    Args:
        num_bytes (int): Bytes of entropy, at least MIN_TOKEN_BYTES

    Returns:
        str: Uppercase base36 token
    """
    num_bytes = max(num_bytes, MIN_TOKEN_BYTES)
    value = int.from_bytes(secrets.token_bytes(num_bytes), 'big')
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return ''.join(reversed(digits)) or '0'


class QRGenerator:
    """
    Issuer of attendance codes.
    Creates, deactivates, lists and renders the codes staff display to a class.
    """

    def __init__(self, database_manager, auth_manager, settings: Dict[str, Any] = None,
                 token_factory: Optional[Callable[[], str]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the QR code generator.

        Args:
            database_manager: Database manager instance
            auth_manager: Auth manager used for capability checks
            settings (dict): Overrides for default_settings
            token_factory (callable): Produces new tokens; defaults to generate_token
            clock (callable): Returns the current local time
        """
        self.db = database_manager
        self.auth = auth_manager
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.default_settings = {
            'token_bytes': 12,
            'default_duration_minutes': 60,
            'max_duration_minutes': 480,
            'version': 1,
            'error_correction': qrcode.constants.ERROR_CORRECT_M,
            'box_size': 10,
            'border': 4,
            'fill_color': 'black',
            'back_color': 'white',
        }
        if settings:
            self.default_settings.update(settings)

        self.token_factory = token_factory or (
            lambda: generate_token(self.default_settings['token_bytes'])
        )

    def issue_code(self, identity: Identity, class_subject: str, class_type: str,
                   time_slot: str, location: Optional[str] = None,
                   duration_minutes: Optional[int] = None,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Issue a new attendance code for a class session.

        Args:
            identity (Identity): Issuing staff member
            class_subject (str): Subject name
            class_type (str): One of SESSION_TYPES
            time_slot (str): Time slot label, e.g. "11:00-12:00"
            location (str): Optional location
            duration_minutes (int): Minutes until the code expires
            now (datetime): Issue time, defaults to the clock

        Returns:
            Dict[str, Any]: The stored attendance code record

        Raises:
            AuthorizationError: Caller may not issue codes
            InvalidInputError: Malformed session details
            StorageError: Store failure
        """
        self.auth.require(identity, Capability.ISSUE_CODES)

        class_subject = (class_subject or '').strip()
        time_slot = (time_slot or '').strip()
        class_type = (class_type or '').strip().lower()
        location = (location or '').strip() or None

        if not class_subject:
            raise InvalidInputError("Class subject is required", field='class_subject')
        if not time_slot:
            raise InvalidInputError("Time slot is required", field='time_slot')
        if class_type not in SESSION_TYPES:
            raise InvalidInputError(
                f"Class type must be one of: {', '.join(SESSION_TYPES)}", field='class_type'
            )

        if duration_minutes is None:
            duration_minutes = self.default_settings['default_duration_minutes']
        try:
            duration_minutes = int(duration_minutes)
        except (TypeError, ValueError):
            raise InvalidInputError("Duration must be a whole number of minutes",
                                    field='duration_minutes')
        if not 0 < duration_minutes <= self.default_settings['max_duration_minutes']:
            raise InvalidInputError(
                f"Duration must be between 1 and {self.default_settings['max_duration_minutes']} minutes",
                field='duration_minutes'
            )

        now = (now or self.clock()).replace(microsecond=0)
        record = {
            'class_subject': class_subject,
            'class_type': class_type,
            'time_slot': time_slot,
            'location': location,
            'date': now.date().isoformat(),
            'created_at': now.isoformat(timespec='seconds'),
            'expires_at': (now + timedelta(minutes=duration_minutes)).isoformat(timespec='seconds'),
            'is_active': True,
            'teacher_id': identity.user_id,
        }

        # A fresh token is drawn if the unique index reports a collision.
        for _ in range(3):
            record['code'] = self.token_factory()
            rows, error = self.db.insert('attendance_qr_codes', record)
            if not error:
                code = rows[0]
                self.logger.info(
                    f"Attendance code issued for {class_subject} {time_slot} "
                    f"by {identity.user_id}, expires {code['expires_at']}"
                )
                return code
            if not error.is_unique_violation:
                break

        self.logger.error(f"Failed to issue attendance code: {error.message}")
        raise error

    def deactivate_code(self, identity: Identity, code_id: str) -> Dict[str, Any]:
        """
        Deactivate an attendance code. Deactivating twice is a no-op.

        Args:
            identity (Identity): Caller; must be the issuer or an administrator
            code_id (str): Attendance code record id

        Returns:
            Dict[str, Any]: The code record after deactivation
        """
        rows, error = self.db.select('attendance_qr_codes', {'id': code_id}, limit=1)
        if error:
            raise error
        if not rows:
            raise ValidationError(ValidationReason.NOT_FOUND, "Attendance code not found")

        code = rows[0]
        if identity is None or (code['teacher_id'] != identity.user_id
                                and identity.role is not Role.ADMIN):
            raise AuthorizationError("Only the issuing staff member may deactivate this code",
                                     capability=Capability.ISSUE_CODES.value)

        if not code['is_active']:
            return code

        rows, error = self.db.update('attendance_qr_codes', {'id': code_id}, {'is_active': False})
        if error:
            self.logger.error(f"Failed to deactivate code {code_id}: {error.message}")
            raise error

        self.logger.info(f"Attendance code {code_id} deactivated by {identity.user_id}")
        return rows[0] if rows else dict(code, is_active=False)

    def get_codes_for_issuer(self, identity: Identity,
                             date: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List the codes issued on a date (default today), newest first.
        Administrators see every issuer's codes.
        """
        self.auth.require(identity, Capability.ISSUE_CODES)
        filters = {'date': date or self.clock().date().isoformat()}
        if identity.role is not Role.ADMIN:
            filters['teacher_id'] = identity.user_id

        rows, error = self.db.select('attendance_qr_codes', filters,
                                     order_by='created_at', descending=True)
        if error:
            raise error
        return rows

    def get_active_codes(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        List today's codes that are active and not yet expired, by time slot.
        """
        now = now or self.clock()
        rows, error = self.db.select(
            'attendance_qr_codes',
            {
                'date': now.date().isoformat(),
                'is_active': True,
                'expires_at': ('gt', now.isoformat(timespec='seconds')),
            },
            order_by='time_slot'
        )
        if error:
            raise error
        for row in rows:
            row['time_remaining'] = self.time_remaining(row['expires_at'], now)
        return rows

    @staticmethod
    def time_remaining(expires_at: str, now: datetime) -> str:
        """Format the time left before expiry as "Xm Ys remaining" or "Expired"."""
        remaining = datetime.fromisoformat(expires_at) - now
        seconds = int(remaining.total_seconds())
        if seconds <= 0:
            return "Expired"
        minutes, seconds = divmod(seconds, 60)
        return f"{minutes}m {seconds}s remaining"

    def render_qr_image(self, code: Dict[str, Any], with_caption: bool = True) -> Dict[str, Any]:
        """
        Render an attendance code as a PNG QR image.

        Args:
            code (dict): Attendance code record
            with_caption (bool): Draw subject, time slot and location below the code

        Returns:
            Dict[str, Any]: Base64 image data, size and suggested filename
        """
        settings = self.default_settings
        qr = qrcode.QRCode(
            version=settings['version'],
            error_correction=settings['error_correction'],
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(code['code'])
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        ).convert('RGB')

        if with_caption:
            img = self._add_caption(img, code)

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')

        return {
            'success': True,
            'code_id': code['id'],
            'image_base64': base64.b64encode(buffer.getvalue()).decode(),
            'image_size': img.size,
            'filename': f"attendance_{code['class_subject'].replace(' ', '_')}_{code['date']}.png",
        }

    def _add_caption(self, qr_img: Image.Image, code: Dict[str, Any]) -> Image.Image:
        """
        Add session details below the QR code.

        Args:
            qr_img (Image.Image): QR code image
            code (dict): Attendance code record

        Returns:
            Image.Image: QR code with caption
        """
        lines = [
            f"{code['class_subject']} ({code['class_type']})",
            f"{code['time_slot']} - {code['date']}",
            code['code'],
        ]
        if code.get('location'):
            lines.insert(2, code['location'])

        width, height = qr_img.size
        canvas = Image.new('RGB', (width, height + 22 * len(lines) + 10), 'white')
        canvas.paste(qr_img, (0, 0))
        draw = ImageDraw.Draw(canvas)

        try:
            font = ImageFont.truetype("arial.ttf", 14)
        except (IOError, OSError):
            font = ImageFont.load_default()

        text_y = height + 5
        for line in lines:
            bbox = draw.textbbox((0, 0), line, font=font)
            draw.text(((width - (bbox[2] - bbox[0])) // 2, text_y), line, fill='black', font=font)
            text_y += 22

        return canvas
