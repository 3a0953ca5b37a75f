"""
Shared fixtures for the campus portal test suite.

Every test gets a fresh SQLite file under ``tmp_path`` (in-memory databases
are private to one connection, and the managers use one connection per
thread), a controllable clock and a set of profiles covering each role.
"""

from datetime import datetime, timedelta

import pytest

from app import create_app
from campus_portal.modules.database_manager import DatabaseManager
from campus_portal.modules.auth_manager import AuthManager, Role
from campus_portal.modules.qr_generator import QRGenerator
from campus_portal.modules.code_validator import CodeValidator
from campus_portal.modules.attendance_manager import AttendanceManager
from campus_portal.modules.redemption_workflow import RedemptionWorkflow
from campus_portal.modules.notification_system import NotificationSystem
from campus_portal.modules.event_manager import EventManager
from campus_portal.modules.complaint_manager import ComplaintManager
from campus_portal.modules.hostel_manager import HostelManager
from campus_portal.modules.profile_manager import ProfileManager
from campus_portal.modules.report_generator import ReportGenerator

T0 = datetime(2024, 1, 15, 11, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / 'campus.db', timeout=5.0, seed_defaults=False)
    yield manager
    manager.close_all_connections()


@pytest.fixture
def notifier(db):
    system = NotificationSystem(recent_limit=50)
    system.attach(db)
    yield system
    system.shutdown()


@pytest.fixture
def auth(db):
    return AuthManager(db)


@pytest.fixture
def profiles(db, auth):
    return ProfileManager(db, auth)


@pytest.fixture
def make_identity(profiles, auth):
    def factory(user_id, role, full_name=None, **details):
        profiles.create_profile(
            user_id,
            full_name or user_id.replace('-', ' ').title(),
            f"{user_id}@campus.edu",
            role,
            **details
        )
        return auth.resolve_identity(user_id)
    return factory


@pytest.fixture
def teacher(make_identity):
    return make_identity('teacher-1', Role.TEACHER, department='Computer Science')


@pytest.fixture
def other_teacher(make_identity):
    return make_identity('teacher-2', Role.TEACHER)


@pytest.fixture
def student(make_identity):
    return make_identity('student-1', Role.STUDENT, student_id='CS2024001',
                         department='Computer Science', year=2)


@pytest.fixture
def other_student(make_identity):
    return make_identity('student-2', Role.STUDENT, student_id='CS2024002')


@pytest.fixture
def admin(make_identity):
    return make_identity('admin-1', Role.ADMIN)


@pytest.fixture
def warden(make_identity):
    return make_identity('warden-1', Role.WARDEN)


@pytest.fixture
def issuer(db, auth, clock):
    return QRGenerator(db, auth, clock=clock)


@pytest.fixture
def validator(db, clock):
    return CodeValidator(db, clock=clock)


@pytest.fixture
def ledger(db, auth, clock):
    return AttendanceManager(db, auth, clock=clock)


@pytest.fixture
def workflow(validator, ledger, notifier, auth, clock):
    return RedemptionWorkflow(validator, ledger, notifier, auth, clock=clock)


@pytest.fixture
def events(db, auth, clock):
    return EventManager(db, auth, clock=clock)


@pytest.fixture
def complaints(db, auth, clock):
    return ComplaintManager(db, auth, clock=clock)


@pytest.fixture
def hostels(db, auth):
    return HostelManager(db, auth)


@pytest.fixture
def reports(db, auth, tmp_path):
    return ReportGenerator(db, auth, output_dir=tmp_path / 'exports')


@pytest.fixture
def app(tmp_path):
    application = create_app('testing', {
        'DATABASE_PATH': tmp_path / 'api.db',
        'EXPORTS_FOLDER': tmp_path / 'exports',
    })
    yield application
    components = application.extensions['campus_portal']
    components['notifier'].shutdown()
    components['db'].close_all_connections()


@pytest.fixture
def components(app):
    return app.extensions['campus_portal']


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client, components):
    """Create a profile in the app's database and sign the test client in as it."""
    def sign_in(user_id, role=Role.STUDENT, **details):
        profile = components['profiles'].get_profile(user_id)
        if profile is None:
            profile = components['profiles'].create_profile(
                user_id, user_id.replace('-', ' ').title(), f"{user_id}@campus.edu", role, **details
            )
        with client.session_transaction() as flask_session:
            flask_session['user_id'] = user_id
        return profile
    return sign_in
