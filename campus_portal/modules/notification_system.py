"""
Notification System Module - Campus Portal

This module delivers realtime change events and transient notifications.

The database manager reports every committed insert and update to
``NotificationSystem.handle_change`` while its write lock is held. Each
change is stamped with a sequence number and queued; a single background
thread dispatches the queue, so subscribers of a table see its changes in
commit order. Delivery is at most once and there is no replay: a
subscription only receives changes committed after it was opened, and a
closed subscription receives nothing.

Features:
- Table subscriptions with event-type and column filters
- Scoped subscription handles (context manager, iterable stream, callbacks)
- Toast notifications with a bounded recent history
- Default watchers for attendance, events and complaints
"""

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime
from queue import Queue, Empty
from typing import Any, Callable, Deque, Dict, List, Optional

from jinja2 import Template


@dataclass
class ChangeEvent:
    """A committed change observed on a table."""
    sequence: int
    table: str
    event_type: str
    record: Dict[str, Any]
    old_record: Optional[Dict[str, Any]]
    committed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NotificationData:
    """Data structure for a transient notification."""
    id: str
    title: str
    message: str
    severity: str
    created_at: str
    data: Dict[str, Any] = field(default_factory=dict)
    recipient_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _FlushMarker:
    def __init__(self):
        self.done = threading.Event()


_CLOSED = object()


class Subscription:
    """
    Handle for one table subscription.

    Events are either passed to ``callback`` on the dispatcher thread or
    buffered for ``get`` / iteration. Closing the handle releases the channel.
    """

    def __init__(self, notifier: 'NotificationSystem', table: str, event: str,
                 filters: Optional[Dict[str, Any]], callback: Optional[Callable[[ChangeEvent], None]],
                 since_sequence: int):
        self.notifier = notifier
        self.table = table
        self.event = event
        self.filters = filters or {}
        self.callback = callback
        self.since_sequence = since_sequence
        self.received_count = 0
        self.closed = False
        self._queue: Queue = Queue()

    def matches(self, change: ChangeEvent) -> bool:
        if change.sequence <= self.since_sequence:
            return False
        if self.event != '*' and change.event_type != self.event:
            return False
        return all(change.record.get(column) == value for column, value in self.filters.items())

    def deliver(self, change: ChangeEvent) -> None:
        if self.closed:
            return
        self.received_count += 1
        if self.callback:
            self.callback(change)
        else:
            self._queue.put(change)

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Return the next buffered event, or None on timeout or close."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except Empty:
            return None
        return None if item is _CLOSED else item

    def __iter__(self):
        while not self.closed:
            change = self.get(timeout=0.5)
            if change is not None:
                yield change

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.notifier._remove_subscription(self)
        self._queue.put(_CLOSED)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class RealtimeWatcher:
    """
    Counts changes on one table and raises a toast for selected event types.
    """

    def __init__(self, notifier: 'NotificationSystem', table: str,
                 toasts: Dict[str, Dict[str, str]], recipient_column: Optional[str] = None):
        self.notifier = notifier
        self.table = table
        self.toasts = toasts
        self.recipient_column = recipient_column
        self.update_count = 0
        self.subscription = notifier.subscribe(table, callback=self._on_change)

    def _on_change(self, change: ChangeEvent) -> None:
        self.update_count += 1
        toast = self.toasts.get(change.event_type)
        recipient = change.record.get(self.recipient_column) if self.recipient_column else None
        if toast:
            self.notifier.send_toast(toast['title'], toast['description'],
                                     data={'table': change.table, 'record_id': change.record.get('id')},
                                     recipient_id=recipient)

    def close(self) -> None:
        self.subscription.close()


class NotificationSystem:
    """
    Realtime change notifier and toast surface.
    """

    SEVERITY_LEVELS = ('info', 'success', 'warning', 'error')

    EVENT_TYPES = ('*', 'INSERT', 'UPDATE')

    def __init__(self, recent_limit: int = 100):
        """
        Initialize the notification system and start the dispatcher thread.

        Args:
            recent_limit (int): Number of toasts kept in the recent history
        """
        self.logger = logging.getLogger(__name__)

        self._change_queue: Queue = Queue()
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()
        self._sequence = 0
        self._toast_ids = itertools.count(1)
        self._databases = []

        self.recent_notifications: Deque[NotificationData] = deque(maxlen=recent_limit)

        self.templates = {
            'attendance_marked': Template(
                "Successfully marked {{ status }} for {{ class_subject }} - {{ time_slot }}"
            ),
        }

        self.dispatcher = threading.Thread(
            target=self._process_changes,
            name='realtime-dispatcher',
            daemon=True
        )
        self.dispatcher.start()

        self.logger.info("Notification system initialized")

    def attach(self, database_manager) -> None:
        """Start observing committed writes on a database manager."""
        database_manager.add_change_listener(self.handle_change)
        self._databases.append(database_manager)

    def handle_change(self, table: str, event_type: str, record: Dict[str, Any],
                      old_record: Optional[Dict[str, Any]] = None) -> None:
        """
        Queue a committed change for delivery.
        Called by the database manager while its write lock is held.
        """
        with self._lock:
            self._sequence += 1
            change = ChangeEvent(
                sequence=self._sequence,
                table=table,
                event_type=event_type,
                record=record,
                old_record=old_record,
                committed_at=datetime.now().isoformat()
            )
        self._change_queue.put(change)

    def subscribe(self, table: str, event: str = '*', filters: Optional[Dict[str, Any]] = None,
                  callback: Optional[Callable[[ChangeEvent], None]] = None) -> Subscription:
        """
        Subscribe to changes on a table.

        Args:
            table (str): Table name
            event (str): '*', 'INSERT' or 'UPDATE'
            filters (dict): Column values the changed record must match
            callback (callable): Called with each ChangeEvent on the dispatcher
                thread; without it events are buffered on the handle

        Returns:
            Subscription: Handle that must be closed to release the channel
        """
        event = (event or '*').upper()
        if event not in self.EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {event}")

        with self._lock:
            subscription = Subscription(self, table, event, filters, callback, self._sequence)
            self._subscriptions.setdefault(table, []).append(subscription)

        self.logger.info(f"Subscribed to {event} changes on {table}")
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            channel = self._subscriptions.get(subscription.table, [])
            if subscription in channel:
                channel.remove(subscription)
            if not channel:
                self._subscriptions.pop(subscription.table, None)
        self.logger.info(f"Released subscription on {subscription.table}")

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(table, []))

    def _process_changes(self) -> None:
        """Background thread delivering queued changes in sequence order."""
        while True:
            change = self._change_queue.get()

            if change is None:
                break
            if isinstance(change, _FlushMarker):
                change.done.set()
                continue

            with self._lock:
                subscribers = list(self._subscriptions.get(change.table, []))

            for subscription in subscribers:
                try:
                    if subscription.matches(change):
                        subscription.deliver(change)
                except Exception as e:
                    self.logger.error(
                        f"Subscriber on {change.table} failed for change {change.sequence}: {str(e)}"
                    )

    def flush(self, timeout: float = 5.0) -> bool:
        """
        Wait until every change queued so far has been dispatched.

        Returns:
            bool: False if the timeout elapsed first
        """
        marker = _FlushMarker()
        self._change_queue.put(marker)
        return marker.done.wait(timeout)

    def send_toast(self, title: str, description: str, severity: str = 'info',
                   data: Optional[Dict[str, Any]] = None,
                   recipient_id: Optional[str] = None) -> NotificationData:
        """
        Record a transient notification for display. Never raises on bad severity.

        Args:
            title (str): Notification title
            description (str): Notification body
            severity (str): info, success, warning or error
            data (dict): Additional data
            recipient_id (str): Profile id the toast is for; None broadcasts it

        Returns:
            NotificationData: The stored notification
        """
        if severity not in self.SEVERITY_LEVELS:
            severity = 'info'

        notification = NotificationData(
            id=f"toast_{next(self._toast_ids)}",
            title=title,
            message=description,
            severity=severity,
            created_at=datetime.now().isoformat(),
            data=data or {},
            recipient_id=recipient_id
        )
        self.recent_notifications.append(notification)

        log = self.logger.warning if severity in ('warning', 'error') else self.logger.info
        log(f"Notification [{severity}] {title}: {description}")
        return notification

    def format_message(self, template_name: str, **context) -> str:
        return self.templates[template_name].render(**context)

    def get_recent_notifications(self, limit: int = 20,
                                 recipient_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent broadcast toasts and toasts for ``recipient_id``, newest first."""
        items = [item for item in self.recent_notifications
                 if item.recipient_id is None or item.recipient_id == recipient_id][-limit:]
        return [item.to_dict() for item in reversed(items)]

    def register_default_watchers(self) -> Dict[str, RealtimeWatcher]:
        """
        Watch attendance, events and complaints and raise the standard toasts.

        Returns:
            Dict[str, RealtimeWatcher]: Watchers keyed by table name
        """
        return {
            'attendance': RealtimeWatcher(self, 'attendance', {
                'INSERT': {'title': "Attendance Updated",
                           'description': "A new attendance record has been added."},
            }, recipient_column='user_id'),
            'events': RealtimeWatcher(self, 'events', {
                'INSERT': {'title': "New Event Added",
                           'description': "A new event has been created."},
            }),
            'complaints': RealtimeWatcher(self, 'complaints', {
                'INSERT': {'title': "New Complaint Filed",
                           'description': "A new complaint has been submitted."},
                'UPDATE': {'title': "Complaint Updated",
                           'description': "A complaint status has been updated."},
            }),
        }

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop observing attached databases and stop the dispatcher thread."""
        for database_manager in self._databases:
            database_manager.remove_change_listener(self.handle_change)
        self._databases = []
        self._change_queue.put(None)
        self.dispatcher.join(timeout)
