"""
Campus Portal - Main Application

This module serves as the main entry point for the campus portal.
It builds the Flask application, wires the attendance core and campus
services together and exposes them as a JSON API.

Features:
- Attendance code issuance, display and deactivation for staff
- Self-service attendance redemption for students
- Manual marking, statistics and CSV/Excel export
- Events, complaints, hostels and profiles
- Server-Sent Events stream of realtime table changes
"""

from flask import Flask, Blueprint, Response, current_app, g, jsonify, request, send_file, session, stream_with_context
from datetime import datetime
import base64
import io
import json
import logging
from functools import wraps

from config import init_config
from campus_portal import __version__
from campus_portal.exceptions import (
    AuthorizationError,
    CampusPortalError,
    DuplicateError,
    InvalidInputError,
    StorageError,
    ValidationError,
    ValidationReason,
)
from campus_portal.modules import get_module_info
from campus_portal.modules.database_manager import DatabaseManager
from campus_portal.modules.auth_manager import AuthManager, Capability
from campus_portal.modules.qr_generator import QRGenerator
from campus_portal.modules.code_validator import CodeValidator
from campus_portal.modules.attendance_manager import AttendanceManager
from campus_portal.modules.redemption_workflow import RedemptionState, RedemptionWorkflow
from campus_portal.modules.notification_system import NotificationSystem
from campus_portal.modules.event_manager import EventManager
from campus_portal.modules.complaint_manager import ComplaintManager
from campus_portal.modules.hostel_manager import HostelManager
from campus_portal.modules.profile_manager import ProfileManager
from campus_portal.modules.report_generator import ReportGenerator

logger = logging.getLogger(__name__)

# Tables clients may subscribe to, with the column that scopes rows to their owner
REALTIME_TABLES = {
    'attendance': ('user_id', Capability.VIEW_ALL_ATTENDANCE),
    'complaints': ('user_id', Capability.MANAGE_COMPLAINTS),
    'events': (None, None),
    'attendance_qr_codes': (None, None),
}

# Columns withheld from realtime payloads unless the caller holds the capability
REALTIME_HIDDEN_COLUMNS = {
    'attendance_qr_codes': (('code',), Capability.ISSUE_CODES),
}

api = Blueprint('api', __name__, url_prefix='/api')


def portal():
    """Components of the running application."""
    return current_app.extensions['campus_portal']


def json_body():
    return request.get_json(silent=True) or {}


def login_required(f):
    """Decorator to require an authenticated user with a profile"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_user_id = session.get('user_id')
        header = current_app.config.get('TRUSTED_IDENTITY_HEADER')
        if not auth_user_id and header:
            auth_user_id = request.headers.get(header)

        identity = portal()['auth'].resolve_identity(auth_user_id)
        if identity is None:
            return jsonify({
                'success': False,
                'error_type': 'authentication_required',
                'message': 'Please log in to access this resource.'
            }), 401

        g.auth_user_id = auth_user_id
        g.identity = identity
        return f(*args, **kwargs)
    return decorated_function


def capability_required(capability):
    """Decorator to require a capability; implies login_required"""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            portal()['auth'].require(g.identity, capability)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def error_status(error):
    if isinstance(error, DuplicateError):
        return 409
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, StorageError):
        return 503
    if isinstance(error, ValidationError) and error.reason is ValidationReason.NOT_FOUND:
        return 404
    return 400


def handle_portal_error(error):
    status = error_status(error)
    log = logger.error if status >= 500 else logger.warning
    log(f"{request.method} {request.path} failed ({error.error_code}): {error.message}")
    return jsonify(error.to_dict()), status


# ----------------------------------------------------------------------
# Attendance codes
# ----------------------------------------------------------------------

@api.route('/qr-codes', methods=['POST'])
@capability_required(Capability.ISSUE_CODES)
def issue_code():
    """Issue an attendance code for a class session"""
    data = json_body()
    code = portal()['qr_generator'].issue_code(
        g.identity,
        class_subject=data.get('class_subject'),
        class_type=data.get('class_type'),
        time_slot=data.get('time_slot'),
        location=data.get('location'),
        duration_minutes=data.get('duration_minutes')
    )
    return jsonify({
        'success': True,
        'message': 'QR code generated successfully',
        'qr_code': code
    }), 201


@api.route('/qr-codes', methods=['GET'])
@capability_required(Capability.ISSUE_CODES)
def list_codes():
    """Codes issued by the caller on a date (default today)"""
    codes = portal()['qr_generator'].get_codes_for_issuer(g.identity, request.args.get('date'))
    return jsonify({'success': True, 'qr_codes': codes})


@api.route('/qr-codes/active', methods=['GET'])
@login_required
def active_codes():
    """Today's codes that can still be redeemed"""
    codes = portal()['qr_generator'].get_active_codes()
    if not g.identity.can(Capability.ISSUE_CODES):
        # Students see the session details, never the token itself.
        codes = [{key: value for key, value in code.items() if key != 'code'} for code in codes]
    return jsonify({'success': True, 'qr_codes': codes})


@api.route('/qr-codes/<code_id>/deactivate', methods=['POST'])
@login_required
def deactivate_code(code_id):
    code = portal()['qr_generator'].deactivate_code(g.identity, code_id)
    return jsonify({
        'success': True,
        'message': 'QR code has been deactivated',
        'qr_code': code
    })


@api.route('/qr-codes/<code_id>/image', methods=['GET'])
@capability_required(Capability.ISSUE_CODES)
def code_image(code_id):
    """QR image for display; ``?format=png`` returns the image file itself"""
    rows, error = portal()['db'].select('attendance_qr_codes', {'id': code_id}, limit=1)
    if error:
        raise error
    if not rows:
        raise ValidationError(ValidationReason.NOT_FOUND, "Attendance code not found")

    with_caption = request.args.get('caption', 'true').lower() != 'false'
    image = portal()['qr_generator'].render_qr_image(rows[0], with_caption=with_caption)

    if request.args.get('format') == 'png':
        return send_file(
            io.BytesIO(base64.b64decode(image['image_base64'])),
            mimetype='image/png',
            download_name=image['filename']
        )
    return jsonify(image)


# ----------------------------------------------------------------------
# Attendance
# ----------------------------------------------------------------------

REDEMPTION_STATUS = {
    RedemptionState.COMMITTED: 201,
    RedemptionState.REJECTED: 400,
    RedemptionState.FAILED: 503,
}


@api.route('/attendance/redeem', methods=['POST'])
@capability_required(Capability.REDEEM_CODES)
def redeem_code():
    """Redeem an attendance code for the current student"""
    result = portal()['workflow'].redeem(g.identity, json_body().get('code', ''))
    status = REDEMPTION_STATUS[result.state]
    if isinstance(result.error, DuplicateError):
        status = 409
    return jsonify(result.to_dict()), status


@api.route('/attendance/mark', methods=['POST'])
@capability_required(Capability.MARK_ATTENDANCE_MANUALLY)
def mark_attendance():
    """Mark a student present, late or absent for an issued code's session"""
    data = json_body()
    record = portal()['attendance'].mark_manually(
        g.identity,
        code_id=data.get('qr_code_id'),
        student_id=data.get('student_id'),
        status=data.get('status', 'present')
    )
    return jsonify({
        'success': True,
        'message': f"Attendance marked as {record['status']}",
        'attendance': record
    }), 201


@api.route('/attendance/today', methods=['GET'])
@login_required
def today_attendance():
    records = portal()['attendance'].get_today_attendance(g.identity.user_id)
    return jsonify({'success': True, 'attendance': records})


@api.route('/attendance/records', methods=['GET'])
@capability_required(Capability.VIEW_ALL_ATTENDANCE)
def attendance_records():
    """Every record for a date with the student's name and number"""
    records = portal()['attendance'].get_attendance_for_date(g.identity, request.args.get('date'))
    return jsonify({'success': True, 'attendance': records})


@api.route('/attendance/stats', methods=['GET'])
@login_required
def attendance_stats():
    attendance = portal()['attendance']
    data = {
        'success': True,
        'subjects': attendance.get_subject_statistics(g.identity.user_id)
    }
    if g.identity.can(Capability.VIEW_ALL_ATTENDANCE):
        data['daily_summary'] = attendance.get_daily_summary(request.args.get('date'))
    return jsonify(data)


@api.route('/attendance/export', methods=['GET'])
@capability_required(Capability.EXPORT_ATTENDANCE)
def export_attendance():
    filters = {field: request.args.get(field) for field in ReportGenerator.FILTER_FIELDS}
    result = portal()['reports'].export_attendance(
        g.identity, filters, output_format=request.args.get('format', 'csv')
    )
    if not result['success']:
        return jsonify(result), 404
    return send_file(result['path'], as_attachment=True, download_name=result['filename'])


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------

@api.route('/events', methods=['GET'])
@login_required
def list_events():
    events = portal()['events'].list_events(request.args.get('status'), request.args.get('search'))
    return jsonify({'success': True, 'events': events})


@api.route('/events', methods=['POST'])
@capability_required(Capability.MANAGE_EVENTS)
def create_event():
    event = portal()['events'].create_event(g.identity, json_body())
    return jsonify({'success': True, 'message': 'Event created successfully!', 'event': event}), 201


@api.route('/events/<event_id>/register', methods=['POST'])
@capability_required(Capability.REGISTER_EVENTS)
def register_for_event(event_id):
    registration = portal()['events'].register(g.identity, event_id)
    return jsonify({
        'success': True,
        'message': 'Successfully registered for the event!',
        'registration': registration
    }), 201


@api.route('/events/registrations', methods=['GET'])
@login_required
def my_registrations():
    registrations = portal()['events'].my_registrations(g.identity)
    return jsonify({'success': True, 'registrations': registrations})


# ----------------------------------------------------------------------
# Complaints
# ----------------------------------------------------------------------

@api.route('/complaints', methods=['GET'])
@login_required
def list_complaints():
    complaints = portal()['complaints'].list_complaints(
        g.identity, request.args.get('status'), request.args.get('search')
    )
    return jsonify({'success': True, 'complaints': complaints})


@api.route('/complaints', methods=['POST'])
@capability_required(Capability.FILE_COMPLAINTS)
def file_complaint():
    data = json_body()
    complaint = portal()['complaints'].file_complaint(
        g.identity,
        subject=data.get('subject'),
        description=data.get('description'),
        category=data.get('category', 'academic'),
        priority=data.get('priority', 'medium')
    )
    return jsonify({
        'success': True,
        'message': 'Complaint submitted successfully!',
        'complaint': complaint
    }), 201


@api.route('/complaints/<complaint_id>/status', methods=['POST'])
@capability_required(Capability.MANAGE_COMPLAINTS)
def update_complaint_status(complaint_id):
    data = json_body()
    complaint = portal()['complaints'].update_status(
        g.identity,
        complaint_id,
        status=data.get('status'),
        resolution_notes=data.get('resolution_notes'),
        assigned_to=data.get('assigned_to')
    )
    return jsonify({'success': True, 'complaint': complaint})


# ----------------------------------------------------------------------
# Hostels
# ----------------------------------------------------------------------

@api.route('/hostels', methods=['GET'])
@login_required
def list_hostels():
    return jsonify({'success': True, 'hostels': portal()['hostels'].get_all_hostels()})


@api.route('/hostels', methods=['POST'])
@capability_required(Capability.MANAGE_HOSTELS)
def create_hostel():
    data = json_body()
    hostel = portal()['hostels'].create_hostel(
        g.identity,
        name=data.get('name'),
        hostel_type=data.get('type'),
        capacity=data.get('capacity'),
        address=data.get('address'),
        warden_id=data.get('warden_id'),
        amenities=data.get('amenities')
    )
    return jsonify({'success': True, 'hostel': hostel}), 201


@api.route('/hostels/occupancy', methods=['GET'])
@login_required
def hostel_occupancy():
    hostels = portal()['hostels']
    return jsonify({
        'success': True,
        'hostels': hostels.get_occupancy_stats(),
        'totals': hostels.get_campus_totals()
    })


@api.route('/rooms', methods=['GET'])
@login_required
def list_rooms():
    rooms = portal()['hostels'].get_rooms(request.args.get('hostel_id'))
    return jsonify({'success': True, 'rooms': rooms})


@api.route('/rooms', methods=['POST'])
@capability_required(Capability.MANAGE_HOSTELS)
def create_room():
    data = json_body()
    room = portal()['hostels'].create_room(
        g.identity,
        hostel_id=data.get('hostel_id'),
        room_number=data.get('room_number'),
        capacity=data.get('capacity'),
        rent_per_month=data.get('rent_per_month'),
        amenities=data.get('amenities')
    )
    return jsonify({'success': True, 'room': room}), 201


@api.route('/rooms/<room_id>/allocate', methods=['POST'])
@capability_required(Capability.MANAGE_HOSTELS)
def allocate_room(room_id):
    room = portal()['hostels'].allocate_room(g.identity, json_body().get('profile_id'), room_id)
    return jsonify({'success': True, 'room': room})


# ----------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------

@api.route('/profile', methods=['GET'])
@login_required
def get_profile():
    """The caller's profile and the capabilities of their role"""
    capabilities = portal()['auth'].get_capabilities(g.identity.role)
    return jsonify({
        'success': True,
        'profile': portal()['profiles'].get_profile(g.auth_user_id),
        'capabilities': sorted(capability.value for capability in capabilities)
    })


@api.route('/profile', methods=['PATCH'])
@login_required
def update_profile():
    profile = portal()['profiles'].update_profile(g.identity, json_body())
    return jsonify({
        'success': True,
        'message': 'Your profile has been successfully updated.',
        'profile': profile
    })


@api.route('/students', methods=['GET'])
@capability_required(Capability.VIEW_STUDENTS)
def list_students():
    students = portal()['profiles'].list_students(g.identity, request.args.get('search'))
    return jsonify({'success': True, 'students': students})


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------

@api.route('/notifications', methods=['GET'])
@login_required
def recent_notifications():
    limit = request.args.get('limit', 20, type=int)
    notifications = portal()['notifier'].get_recent_notifications(limit, g.identity.user_id)
    return jsonify({'success': True, 'notifications': notifications})


@api.route('/realtime/<table>', methods=['GET'])
@login_required
def realtime_stream(table):
    """
    Server-Sent Events stream of changes committed to a table after the
    request was opened. ``?event=INSERT|UPDATE`` narrows the event type and
    ``?limit=N`` ends the stream after N events.
    """
    if table not in REALTIME_TABLES:
        raise InvalidInputError(f"Realtime updates are not available for {table}", field='table')

    owner_column, see_all = REALTIME_TABLES[table]
    filters = None
    if owner_column and not g.identity.can(see_all):
        filters = {owner_column: g.identity.user_id}

    hidden_columns = ()
    if table in REALTIME_HIDDEN_COLUMNS:
        columns, see_hidden = REALTIME_HIDDEN_COLUMNS[table]
        if not g.identity.can(see_hidden):
            hidden_columns = columns

    try:
        subscription = portal()['notifier'].subscribe(table, request.args.get('event', '*'), filters)
    except ValueError as e:
        raise InvalidInputError(str(e), field='event')

    keepalive = current_app.config['REALTIME_KEEPALIVE_SECONDS']
    limit = request.args.get('limit', type=int)

    def generate():
        sent = 0
        try:
            while limit is None or sent < limit:
                change = subscription.get(timeout=keepalive)
                if change is None:
                    if subscription.closed:
                        break
                    yield ": keepalive\n\n"
                    continue
                sent += 1
                payload = change.to_dict()
                for key in ('record', 'old_record'):
                    if payload[key]:
                        payload[key] = {column: value for column, value in payload[key].items()
                                        if column not in hidden_columns}
                yield f"id: {change.sequence}\nevent: {change.event_type}\ndata: {json.dumps(payload)}\n\n"
        finally:
            subscription.close()

    response = Response(stream_with_context(generate()), mimetype='text/event-stream')
    response.headers['Cache-Control'] = 'no-cache'
    response.call_on_close(subscription.close)
    return response


# ----------------------------------------------------------------------
# Application factory
# ----------------------------------------------------------------------

def create_app(config_name=None, overrides=None):
    """
    Build the campus portal application.

    Args:
        config_name (str): development, testing or production; defaults to FLASK_ENV
        overrides (dict): Configuration values applied over the config class

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    init_config(app, config_name, overrides)

    # Configure logging
    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )

    # Initialize system components
    db_manager = DatabaseManager(
        app.config['DATABASE_PATH'],
        timeout=app.config['DATABASE_TIMEOUT'],
        seed_defaults=app.config['SEED_DEFAULT_DATA']
    )
    notification_system = NotificationSystem(recent_limit=app.config['NOTIFICATIONS_RECENT_LIMIT'])
    notification_system.attach(db_manager)

    auth_manager = AuthManager(db_manager)
    qr_generator = QRGenerator(db_manager, auth_manager, settings={
        'token_bytes': app.config['QR_CODE_TOKEN_BYTES'],
        'default_duration_minutes': app.config['QR_CODE_DEFAULT_DURATION_MINUTES'],
        'max_duration_minutes': app.config['QR_CODE_MAX_DURATION_MINUTES'],
        'box_size': app.config['QR_CODE_SIZE'],
        'border': app.config['QR_CODE_BORDER'],
    })
    code_validator = CodeValidator(db_manager)
    attendance_manager = AttendanceManager(db_manager, auth_manager)

    app.extensions['campus_portal'] = {
        'db': db_manager,
        'notifier': notification_system,
        'watchers': notification_system.register_default_watchers(),
        'auth': auth_manager,
        'qr_generator': qr_generator,
        'validator': code_validator,
        'attendance': attendance_manager,
        'workflow': RedemptionWorkflow(code_validator, attendance_manager,
                                       notification_system, auth_manager),
        'events': EventManager(db_manager, auth_manager),
        'complaints': ComplaintManager(db_manager, auth_manager),
        'hostels': HostelManager(db_manager, auth_manager),
        'profiles': ProfileManager(db_manager, auth_manager),
        'reports': ReportGenerator(db_manager, auth_manager,
                                   output_dir=app.config['EXPORTS_FOLDER'],
                                   max_records=app.config['EXPORTS_MAX_RECORDS'],
                                   retention_days=app.config['EXPORTS_RETENTION_DAYS']),
    }

    app.register_blueprint(api)
    app.register_error_handler(CampusPortalError, handle_portal_error)

    @app.route('/')
    def index():
        return jsonify({
            'name': 'Campus Portal',
            'version': __version__,
            'modules': get_module_info(),
            'time': datetime.now().isoformat(timespec='seconds')
        })

    logger.info(f"Campus portal started with database {app.config['DATABASE_PATH']}")
    return app


if __name__ == '__main__':
    # Run the application
    create_app().run(debug=True, host='0.0.0.0', port=5000)
