import base64
import re
from datetime import timedelta

import pytest

from campus_portal.exceptions import (
    AuthorizationError,
    InvalidInputError,
    ValidationError,
    ValidationReason,
)
from campus_portal.modules.qr_generator import QRGenerator, generate_token

from conftest import T0


def issue(issuer, identity, **kwargs):
    details = {
        'class_subject': 'Algorithms',
        'class_type': 'lecture',
        'time_slot': '11:00-12:00',
        'location': 'Room 101',
    }
    details.update(kwargs)
    return issuer.issue_code(identity, **details)


class TestGenerateToken:

    def test_tokens_are_uppercase_base36(self):
        token = generate_token()
        assert re.fullmatch(r'[0-9A-Z]+', token)
        assert len(token) <= 19

    def test_tokens_do_not_repeat(self):
        tokens = {generate_token() for _ in range(200)}
        assert len(tokens) == 200

    def test_entropy_has_a_floor(self):
        # 10 bytes is 80 bits; anything shorter is raised to that
        assert len(generate_token(1)) > 8


class TestIssueCode:

    def test_issue_sets_date_and_expiry(self, issuer, teacher):
        code = issue(issuer, teacher)

        assert code['date'] == '2024-01-15'
        assert code['created_at'] == '2024-01-15T11:00:00'
        assert code['expires_at'] == '2024-01-15T12:00:00'
        assert code['is_active'] is True
        assert code['teacher_id'] == teacher.user_id
        assert code['class_subject'] == 'Algorithms'
        assert code['location'] == 'Room 101'

    def test_custom_duration(self, issuer, teacher):
        code = issue(issuer, teacher, duration_minutes=15)
        assert code['expires_at'] == (T0 + timedelta(minutes=15)).isoformat()

    def test_expiry_counts_from_the_recorded_issue_time(self, issuer, validator, teacher, clock):
        clock.now = T0.replace(microsecond=900000)
        code = issue(issuer, teacher, duration_minutes=15)

        assert code['created_at'] == '2024-01-15T11:00:00'
        assert code['expires_at'] == '2024-01-15T11:15:00'
        assert validator.validate(code['code'], T0 + timedelta(minutes=15))['id'] == code['id']

    def test_student_cannot_issue(self, issuer, student):
        with pytest.raises(AuthorizationError):
            issue(issuer, student)

    @pytest.mark.parametrize('overrides, field', [
        ({'class_subject': '  '}, 'class_subject'),
        ({'time_slot': ''}, 'time_slot'),
        ({'class_type': 'workshop'}, 'class_type'),
        ({'duration_minutes': 0}, 'duration_minutes'),
        ({'duration_minutes': 481}, 'duration_minutes'),
        ({'duration_minutes': 'soon'}, 'duration_minutes'),
    ])
    def test_invalid_input(self, issuer, teacher, overrides, field):
        with pytest.raises(InvalidInputError) as excinfo:
            issue(issuer, teacher, **overrides)
        assert excinfo.value.field == field

    def test_token_collision_draws_a_new_token(self, db, auth, clock, teacher):
        tokens = iter(['DUP1', 'DUP1', 'NEW2'])
        issuer = QRGenerator(db, auth, token_factory=lambda: next(tokens), clock=clock)

        first = issue(issuer, teacher)
        second = issue(issuer, teacher, time_slot='12:00-13:00')

        assert first['code'] == 'DUP1'
        assert second['code'] == 'NEW2'


class TestDeactivateCode:

    def test_issuer_can_deactivate(self, issuer, teacher):
        code = issue(issuer, teacher)
        updated = issuer.deactivate_code(teacher, code['id'])
        assert updated['is_active'] is False

    def test_deactivation_is_idempotent(self, issuer, teacher):
        code = issue(issuer, teacher)
        issuer.deactivate_code(teacher, code['id'])
        again = issuer.deactivate_code(teacher, code['id'])
        assert again['is_active'] is False

    def test_other_staff_cannot_deactivate(self, issuer, teacher, other_teacher):
        code = issue(issuer, teacher)
        with pytest.raises(AuthorizationError):
            issuer.deactivate_code(other_teacher, code['id'])

    def test_admin_can_deactivate(self, issuer, teacher, admin):
        code = issue(issuer, teacher)
        assert issuer.deactivate_code(admin, code['id'])['is_active'] is False

    def test_unknown_code(self, issuer, teacher):
        with pytest.raises(ValidationError) as excinfo:
            issuer.deactivate_code(teacher, 'missing')
        assert excinfo.value.reason is ValidationReason.NOT_FOUND


class TestListing:

    def test_issuer_sees_only_own_codes(self, issuer, teacher, other_teacher, admin):
        issue(issuer, teacher)
        issue(issuer, other_teacher, class_subject='Databases')

        assert [c['class_subject'] for c in issuer.get_codes_for_issuer(teacher)] == ['Algorithms']
        assert len(issuer.get_codes_for_issuer(admin)) == 2

    def test_active_codes_exclude_expired_and_deactivated(self, issuer, teacher, clock):
        short = issue(issuer, teacher, duration_minutes=10, time_slot='09:00-10:00')
        revoked = issue(issuer, teacher, time_slot='10:00-11:00')
        live = issue(issuer, teacher, time_slot='11:00-12:00')
        issuer.deactivate_code(teacher, revoked['id'])

        active = issuer.get_active_codes(now=clock.advance(minutes=20))

        assert [code['id'] for code in active] == [live['id']]
        assert short['id'] not in {code['id'] for code in active}
        assert active[0]['time_remaining'] == '40m 0s remaining'

    def test_time_remaining(self):
        assert QRGenerator.time_remaining('2024-01-15T12:00:00', T0 + timedelta(minutes=58, seconds=30)) \
            == '1m 30s remaining'
        assert QRGenerator.time_remaining('2024-01-15T12:00:00', T0 + timedelta(hours=2)) == 'Expired'


class TestRenderImage:

    def test_png_output(self, issuer, teacher):
        code = issue(issuer, teacher)
        image = issuer.render_qr_image(code)

        assert image['success'] is True
        assert base64.b64decode(image['image_base64'])[:8] == b'\x89PNG\r\n\x1a\n'
        assert image['filename'] == 'attendance_Algorithms_2024-01-15.png'

    def test_caption_adds_height(self, issuer, teacher):
        code = issue(issuer, teacher)
        plain = issuer.render_qr_image(code, with_caption=False)
        captioned = issuer.render_qr_image(code)

        assert captioned['image_size'][0] == plain['image_size'][0]
        assert captioned['image_size'][1] > plain['image_size'][1]
