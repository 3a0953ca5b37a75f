import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from campus_portal.modules.notification_system import NotificationSystem


def drain(subscription):
    events = []
    while True:
        change = subscription.get(timeout=0.2)
        if change is None:
            return events
        events.append(change)


def attendance_entry(identity, slot):
    return {
        'user_id': identity.user_id,
        'date': '2024-01-15',
        'time_slot': slot,
        'class_subject': 'Algorithms',
        'class_type': 'lecture',
    }


class TestSubscriptions:

    def test_one_event_per_insert_in_commit_order(self, notifier, ledger, db, student):
        slots = [f"{hour:02d}:00-{hour + 1:02d}:00" for hour in range(8, 18)]

        with notifier.subscribe('attendance', 'INSERT') as subscription:
            with ThreadPoolExecutor(max_workers=5) as pool:
                list(pool.map(lambda slot: ledger.record_attendance(attendance_entry(student, slot)),
                              slots))
            assert notifier.flush()
            events = drain(subscription)

        committed, _ = db.select('attendance')
        assert len(events) == len(slots)
        assert [event.record['id'] for event in events] == [row['id'] for row in committed]
        sequences = [event.sequence for event in events]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)

    def test_no_replay_of_earlier_changes(self, notifier, ledger, student):
        ledger.record_attendance(attendance_entry(student, '08:00-09:00'))

        with notifier.subscribe('attendance') as subscription:
            ledger.record_attendance(attendance_entry(student, '09:00-10:00'))
            notifier.flush()
            events = drain(subscription)

        assert [event.record['time_slot'] for event in events] == ['09:00-10:00']

    def test_closed_subscription_receives_nothing(self, notifier, ledger, student):
        subscription = notifier.subscribe('attendance')
        subscription.close()
        ledger.record_attendance(attendance_entry(student, '08:00-09:00'))
        notifier.flush()

        assert subscription.get(timeout=0.1) is None
        assert subscription.received_count == 0
        assert notifier.subscriber_count('attendance') == 0

    def test_context_manager_releases_channel(self, notifier):
        with notifier.subscribe('events'):
            assert notifier.subscriber_count('events') == 1
        assert notifier.subscriber_count('events') == 0

    def test_update_filter(self, notifier, issuer, teacher):
        code = issuer.issue_code(teacher, 'Algorithms', 'lecture', '11:00-12:00')

        with notifier.subscribe('attendance_qr_codes', 'UPDATE') as subscription:
            issuer.issue_code(teacher, 'Databases', 'lecture', '12:00-13:00')
            issuer.deactivate_code(teacher, code['id'])
            notifier.flush()
            events = drain(subscription)

        assert len(events) == 1
        assert events[0].event_type == 'UPDATE'
        assert events[0].old_record['is_active'] is True
        assert events[0].record['is_active'] is False

    def test_column_filter(self, notifier, ledger, student, other_student):
        with notifier.subscribe('attendance', filters={'user_id': student.user_id}) as subscription:
            ledger.record_attendance(attendance_entry(other_student, '08:00-09:00'))
            ledger.record_attendance(attendance_entry(student, '08:00-09:00'))
            notifier.flush()
            events = drain(subscription)

        assert [event.record['user_id'] for event in events] == [student.user_id]

    def test_callback_runs_on_dispatcher(self, notifier, ledger, student):
        seen = []
        subscription = notifier.subscribe(
            'attendance', callback=lambda change: seen.append(threading.current_thread().name)
        )
        ledger.record_attendance(attendance_entry(student, '08:00-09:00'))
        notifier.flush()
        subscription.close()

        assert seen == ['realtime-dispatcher']

    def test_failing_subscriber_does_not_block_others(self, notifier, ledger, student):
        def explode(change):
            raise RuntimeError("boom")

        notifier.subscribe('attendance', callback=explode)
        with notifier.subscribe('attendance') as subscription:
            ledger.record_attendance(attendance_entry(student, '08:00-09:00'))
            notifier.flush()
            assert len(drain(subscription)) == 1

    def test_unknown_event_type(self, notifier):
        with pytest.raises(ValueError):
            notifier.subscribe('attendance', 'DELETE')

    def test_iteration_stops_after_close(self, notifier, ledger, student):
        subscription = notifier.subscribe('attendance')
        ledger.record_attendance(attendance_entry(student, '08:00-09:00'))
        notifier.flush()

        received = []
        for change in subscription:
            received.append(change)
            subscription.close()

        assert len(received) == 1


class TestToasts:

    def test_invalid_severity_falls_back_to_info(self):
        notifier = NotificationSystem()
        try:
            toast = notifier.send_toast("Hello", "World", severity='shout')
            assert toast.severity == 'info'
        finally:
            notifier.shutdown()

    def test_recent_history_is_bounded_and_newest_first(self):
        notifier = NotificationSystem(recent_limit=3)
        try:
            for index in range(5):
                notifier.send_toast(f"Toast {index}", "body")
            titles = [item['title'] for item in notifier.get_recent_notifications()]
            assert titles == ['Toast 4', 'Toast 3', 'Toast 2']
        finally:
            notifier.shutdown()

    def test_default_watchers(self, notifier, complaints, ledger, student, warden):
        watchers = notifier.register_default_watchers()

        complaint = complaints.file_complaint(student, 'Broken fan', 'Room 12 fan is broken',
                                              category='hostel')
        complaints.update_status(warden, complaint['id'], 'in_progress')
        ledger.record_attendance(attendance_entry(student, '08:00-09:00'))
        notifier.flush()

        broadcast = [item['title'] for item in notifier.get_recent_notifications()]
        personal = [item['title'] for item in
                    notifier.get_recent_notifications(recipient_id=student.user_id)]

        assert broadcast == ['Complaint Updated', 'New Complaint Filed']
        assert personal[0] == 'Attendance Updated'
        assert watchers['complaints'].update_count == 2
        assert watchers['attendance'].update_count == 1
        assert watchers['events'].update_count == 0

        for watcher in watchers.values():
            watcher.close()
        assert notifier.subscriber_count('complaints') == 0


def test_shutdown_detaches_from_database(db, ledger, student):
    notifier = NotificationSystem()
    notifier.attach(db)
    subscription = notifier.subscribe('attendance')
    notifier.shutdown()

    ledger.record_attendance(attendance_entry(student, '08:00-09:00'))

    assert subscription.get(timeout=0.1) is None
    assert db._listeners == []
