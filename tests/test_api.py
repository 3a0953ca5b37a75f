import base64

import pytest

from campus_portal.modules.auth_manager import Role


@pytest.fixture
def issued(client, login):
    login('teacher-1', Role.TEACHER)
    response = client.post('/api/qr-codes', json={
        'class_subject': 'Algorithms',
        'class_type': 'lecture',
        'time_slot': '11:00-12:00',
        'location': 'Room 204',
    })
    assert response.status_code == 201
    return response.get_json()['qr_code']


def future_event(**overrides):
    data = {
        'title': 'Hackathon',
        'description': '24 hour coding challenge',
        'event_type': 'technical',
        'start_date': '2030-03-01T09:00:00',
        'end_date': '2030-03-02T09:00:00',
        'location': 'Main Hall',
    }
    data.update(overrides)
    return data


def test_index(client):
    body = client.get('/').get_json()
    assert body['name'] == 'Campus Portal'
    assert 'redemption_workflow' in body['modules']


def test_requires_login(client):
    response = client.get('/api/attendance/today')
    assert response.status_code == 401
    assert response.get_json()['error_type'] == 'authentication_required'


def test_trusted_header(tmp_path):
    from app import create_app

    app = create_app('testing', {
        'DATABASE_PATH': tmp_path / 'header.db',
        'EXPORTS_FOLDER': tmp_path / 'exports',
        'TRUSTED_IDENTITY_HEADER': 'X-Auth-User',
    })
    components = app.extensions['campus_portal']
    try:
        components['profiles'].create_profile('student-9', 'Student 9', 'student-9@campus.edu')
        response = app.test_client().get('/api/profile', headers={'X-Auth-User': 'student-9'})
        assert response.status_code == 200
        assert response.get_json()['profile']['user_id'] == 'student-9'
    finally:
        components['notifier'].shutdown()
        components['db'].close_all_connections()


class TestAttendanceCodes:

    def test_redeem(self, client, login, issued):
        login('student-1')
        response = client.post('/api/attendance/redeem', json={'code': issued['code']})

        assert response.status_code == 201
        body = response.get_json()
        assert body['state'] == 'committed'
        assert body['title'] == 'Attendance Marked!'
        assert body['attendance']['class_subject'] == 'Algorithms'

        response = client.post('/api/attendance/redeem', json={'code': issued['code']})
        assert response.status_code == 409
        assert response.get_json()['title'] == 'Already Marked'

        today = client.get('/api/attendance/today').get_json()['attendance']
        assert len(today) == 1

    def test_redeem_unknown_code(self, client, login):
        login('student-1')
        response = client.post('/api/attendance/redeem', json={'code': 'ZZZ999'})

        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'not_found'

    def test_redeem_deactivated_code(self, client, login, issued):
        response = client.post(f"/api/qr-codes/{issued['id']}/deactivate")
        assert response.status_code == 200
        assert response.get_json()['qr_code']['is_active'] is False

        login('student-1')
        response = client.post('/api/attendance/redeem', json={'code': issued['code']})
        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'inactive'

    def test_students_cannot_issue(self, client, login):
        login('student-1')
        response = client.post('/api/qr-codes', json={
            'class_subject': 'Algorithms', 'class_type': 'lecture', 'time_slot': '11:00-12:00',
        })
        assert response.status_code == 403
        assert response.get_json()['error_type'] == 'authorization_error'

    def test_invalid_issue(self, client, login):
        login('teacher-1', Role.TEACHER)
        response = client.post('/api/qr-codes', json={'class_subject': 'Algorithms',
                                                      'class_type': 'party',
                                                      'time_slot': '11:00-12:00'})
        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'invalid_input'

    def test_active_codes_hide_token_from_students(self, client, login, issued):
        staff_view = client.get('/api/qr-codes/active').get_json()['qr_codes']
        assert staff_view[0]['code'] == issued['code']

        login('student-1')
        student_view = client.get('/api/qr-codes/active').get_json()['qr_codes']
        assert student_view[0]['class_subject'] == 'Algorithms'
        assert 'code' not in student_view[0]

    def test_code_image(self, client, issued):
        body = client.get(f"/api/qr-codes/{issued['id']}/image").get_json()
        assert base64.b64decode(body['image_base64']).startswith(b'\x89PNG')

        response = client.get(f"/api/qr-codes/{issued['id']}/image?format=png&caption=false")
        assert response.mimetype == 'image/png'

        assert client.get('/api/qr-codes/missing/image').status_code == 404

    def test_manual_marking_and_records(self, client, login, issued):
        student = login('student-1', student_id='CS2024001')
        login('teacher-1')
        response = client.post('/api/attendance/mark', json={
            'qr_code_id': issued['id'], 'student_id': student['id'], 'status': 'late',
        })
        assert response.status_code == 201
        assert response.get_json()['attendance']['marked_by'] != student['id']

        records = client.get('/api/attendance/records').get_json()['attendance']
        assert [r['status'] for r in records] == ['late']

        stats = client.get('/api/attendance/stats').get_json()
        assert stats['daily_summary']['total_records'] == 1

    def test_export(self, client, login, issued):
        assert client.get('/api/attendance/export').status_code == 404

        login('student-1')
        client.post('/api/attendance/redeem', json={'code': issued['code']})
        assert client.get('/api/attendance/export').status_code == 403

        login('teacher-1')
        response = client.get('/api/attendance/export?format=csv')
        assert response.status_code == 200
        assert b'Algorithms' in response.data


class TestCampusServices:

    def test_events(self, client, login):
        login('teacher-1', Role.TEACHER)
        response = client.post('/api/events', json=future_event())
        assert response.status_code == 201
        event_id = response.get_json()['event']['id']

        login('student-1')
        assert client.post('/api/events', json=future_event()).status_code == 403
        assert client.post(f'/api/events/{event_id}/register').status_code == 201
        assert client.post(f'/api/events/{event_id}/register').status_code == 409
        assert client.post('/api/events/missing/register').status_code == 404

        registrations = client.get('/api/events/registrations').get_json()['registrations']
        assert registrations[0]['event']['title'] == 'Hackathon'
        assert client.get('/api/events?search=coding').get_json()['events'][0]['id'] == event_id

    def test_complaints(self, client, login):
        login('student-1')
        response = client.post('/api/complaints', json={
            'subject': 'Wifi down', 'description': 'No wifi on floor 3', 'category': 'hostel',
        })
        assert response.status_code == 201
        complaint_id = response.get_json()['complaint']['id']
        assert client.post(f'/api/complaints/{complaint_id}/status',
                           json={'status': 'resolved'}).status_code == 403

        login('warden-1', Role.WARDEN)
        response = client.post(f'/api/complaints/{complaint_id}/status',
                               json={'status': 'resolved', 'resolution_notes': 'Router replaced'})
        assert response.get_json()['complaint']['status'] == 'resolved'
        assert client.post('/api/complaints/missing/status',
                           json={'status': 'closed'}).status_code == 404

    def test_hostels(self, client, login):
        student = login('student-1')
        login('warden-1', Role.WARDEN)

        hostel = client.post('/api/hostels', json={'name': 'East Hall', 'type': 'mixed',
                                                   'capacity': 10}).get_json()['hostel']
        room = client.post('/api/rooms', json={'hostel_id': hostel['id'], 'room_number': '101',
                                               'capacity': 1}).get_json()['room']
        response = client.post(f"/api/rooms/{room['id']}/allocate", json={'profile_id': student['id']})
        assert response.get_json()['room']['status'] == 'full'

        occupancy = client.get('/api/hostels/occupancy').get_json()
        assert occupancy['hostels'][0]['occupancy_percentage'] == 10.0
        assert occupancy['totals']['total_occupancy'] == 1
        assert client.get('/api/rooms').get_json()['rooms'][0]['hostel'] == {'name': 'East Hall'}

    def test_profile(self, client, login):
        login('student-1')
        response = client.patch('/api/profile', json={'phone': '555-0100', 'department': 'Physics'})
        assert response.get_json()['profile']['department'] == 'Physics'

        response = client.patch('/api/profile', json={'role': 'admin'})
        assert response.status_code == 400

        body = client.get('/api/profile').get_json()
        assert body['profile']['role'] == 'student'
        assert 'redeem_codes' in body['capabilities']
        assert 'issue_codes' not in body['capabilities']

    def test_students_directory(self, client, login):
        login('student-1', student_id='CS2024001')
        assert client.get('/api/students').status_code == 403

        login('teacher-1', Role.TEACHER)
        students = client.get('/api/students?search=CS2024').get_json()['students']
        assert [s['student_id'] for s in students] == ['CS2024001']


class TestNotifications:

    def test_toasts_are_scoped_to_recipient(self, client, login, issued):
        login('student-1')
        client.post('/api/attendance/redeem', json={'code': issued['code']})
        titles = [n['title'] for n in client.get('/api/notifications').get_json()['notifications']]
        assert 'Attendance Marked!' in titles

        login('student-2')
        titles = [n['title'] for n in client.get('/api/notifications').get_json()['notifications']]
        assert 'Attendance Marked!' not in titles

    def test_realtime_stream(self, client, login, components):
        student = login('student-1')
        response = client.get('/api/realtime/attendance?event=INSERT&limit=1')
        assert response.status_code == 200
        assert response.mimetype == 'text/event-stream'

        components['attendance'].record_attendance({
            'user_id': student['id'],
            'date': '2024-01-15',
            'time_slot': '11:00-12:00',
            'class_subject': 'Algorithms',
            'class_type': 'lecture',
        })

        body = response.get_data(as_text=True)
        assert 'event: INSERT' in body
        assert '"class_subject": "Algorithms"' in body
        assert components['notifier'].subscriber_count('attendance') == 1

    @pytest.mark.parametrize('user_id, role, sees_token', [
        ('student-1', Role.STUDENT, False),
        ('teacher-2', Role.TEACHER, True),
    ])
    def test_realtime_code_stream_hides_token_from_students(self, client, login, components,
                                                            user_id, role, sees_token):
        components['profiles'].create_profile('teacher-1', 'Teacher 1', 'teacher-1@campus.edu',
                                              Role.TEACHER)
        issuer = components['auth'].resolve_identity('teacher-1')
        login(user_id, role)
        response = client.get('/api/realtime/attendance_qr_codes?event=INSERT&limit=1')

        code = components['qr_generator'].issue_code(issuer, 'Algorithms', 'lecture', '11:00-12:00')

        body = response.get_data(as_text=True)
        assert '"class_subject": "Algorithms"' in body
        assert (code['code'] in body) is sees_token

    def test_realtime_unknown_table(self, client, login):
        login('student-1')
        response = client.get('/api/realtime/profiles')
        assert response.status_code == 400
