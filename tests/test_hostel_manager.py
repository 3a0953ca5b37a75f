import pytest

from campus_portal.exceptions import AuthorizationError, InvalidInputError, ValidationError
from campus_portal.modules.hostel_manager import occupancy_level


@pytest.fixture
def hostel(hostels, warden):
    return hostels.create_hostel(warden, 'East Hall', 'mixed', 10, amenities=['wifi'])


@pytest.fixture
def room(hostels, warden, hostel):
    return hostels.create_room(warden, hostel['id'], '101', 2, rent_per_month=3500.0)


@pytest.mark.parametrize('percentage, level', [
    (0, 'low'), (69.9, 'low'), (70, 'medium'), (89.9, 'medium'), (90, 'high'), (100, 'high'),
])
def test_occupancy_levels(percentage, level):
    assert occupancy_level(percentage) == level


def test_create_hostel(hostel):
    assert hostel['current_occupancy'] == 0
    assert hostel['amenities'] == ['wifi']


def test_hostel_names_are_unique(hostels, warden, hostel):
    with pytest.raises(InvalidInputError):
        hostels.create_hostel(warden, 'East Hall', 'boys', 5)


def test_students_cannot_manage_hostels(hostels, student):
    with pytest.raises(AuthorizationError):
        hostels.create_hostel(student, 'West Hall', 'boys', 5)


def test_room_numbers_are_unique_per_hostel(hostels, warden, hostel, room):
    with pytest.raises(InvalidInputError):
        hostels.create_room(warden, hostel['id'], '101', 3)


def test_room_in_unknown_hostel(hostels, warden):
    with pytest.raises(ValidationError):
        hostels.create_room(warden, 'missing', '101', 2)


def test_rooms_embed_hostel_name(hostels, room):
    rooms = hostels.get_rooms()
    assert rooms[0]['room_number'] == '101'
    assert rooms[0]['hostel'] == {'name': 'East Hall'}


def test_allocate_room(hostels, profiles, warden, hostel, room, student, other_student):
    updated = hostels.allocate_room(warden, student.user_id, room['id'])
    assert updated['current_occupancy'] == 1
    assert updated['status'] == 'available'

    updated = hostels.allocate_room(warden, other_student.user_id, room['id'])
    assert updated['status'] == 'full'

    profile = profiles.get_profile('student-1')
    assert profile['hostel_id'] == hostel['id']
    assert profile['room_number'] == '101'
    assert hostels.get_hostel(hostel['id'])['current_occupancy'] == 2


def test_allocate_full_room(hostels, warden, room, student, other_student, make_identity):
    hostels.allocate_room(warden, student.user_id, room['id'])
    hostels.allocate_room(warden, other_student.user_id, room['id'])
    third = make_identity('student-3', 'student')

    with pytest.raises(InvalidInputError, match='full'):
        hostels.allocate_room(warden, third.user_id, room['id'])


def test_allocate_same_room_twice(hostels, warden, room, student):
    hostels.allocate_room(warden, student.user_id, room['id'])
    with pytest.raises(InvalidInputError, match='already'):
        hostels.allocate_room(warden, student.user_id, room['id'])


def test_reallocation_releases_previous_room(hostels, profiles, warden, hostel, room, student,
                                             other_student):
    hostels.allocate_room(warden, student.user_id, room['id'])
    hostels.allocate_room(warden, other_student.user_id, room['id'])
    other_room = hostels.create_room(warden, hostel['id'], '102', 2)

    hostels.allocate_room(warden, student.user_id, other_room['id'])

    rooms = {r['room_number']: r for r in hostels.get_rooms(hostel['id'])}
    assert rooms['101']['current_occupancy'] == 1
    assert rooms['101']['status'] == 'available'
    assert rooms['102']['current_occupancy'] == 1
    assert hostels.get_hostel(hostel['id'])['current_occupancy'] == 2
    assert profiles.get_profile('student-1')['room_number'] == '102'


def test_occupancy_stats(hostels, warden, hostel, room, student, other_student):
    hostels.create_hostel(warden, 'West Hall', 'boys', 4)
    hostels.allocate_room(warden, student.user_id, room['id'])

    stats = {row['hostel_name']: row for row in hostels.get_occupancy_stats()}
    assert stats['East Hall']['occupancy_percentage'] == 10.0
    assert stats['East Hall']['level'] == 'low'
    assert stats['West Hall']['current_occupancy'] == 0

    totals = hostels.get_campus_totals()
    assert totals['hostel_count'] == 2
    assert totals['total_capacity'] == 14
    assert totals['total_occupancy'] == 1
    assert totals['occupancy_percentage'] == 7.1
