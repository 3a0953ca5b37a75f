"""
Database Manager Module - Campus Portal

This module handles all database operations for the campus portal.
It provides connection management for the SQLite store, schema creation,
and a small table-oriented CRUD interface (select / insert / update) whose
calls return a ``(data, error)`` pair instead of raising, so callers decide
how a failure is surfaced.

Every committed insert or update is reported to registered change listeners
while the write lock is still held. Listeners therefore observe changes in
commit order, which is what the realtime notifier relies on.

Features:
- SQLite connection management (thread-local connections)
- Schema creation for attendance, events, complaints, hostels and profiles
- Filtered selects with ordering, limits and one-level embedded relations
- Atomic multi-row inserts and filtered updates
- Change feed for committed writes
"""

import sqlite3
import logging
import threading
import uuid
import json
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from campus_portal.exceptions import StorageError


# Columns stored as 0/1 that are returned as bool
BOOLEAN_COLUMNS = {'is_active', 'registration_required'}

# Columns stored as JSON text that are returned as lists
JSON_COLUMNS = {'amenities', 'attachments'}

FILTER_OPERATORS = {
    'eq': '=',
    'neq': '!=',
    'gt': '>',
    'gte': '>=',
    'lt': '<',
    'lte': '<=',
    'like': 'LIKE',
    'in': 'IN',
}

ChangeListener = Callable[[str, str, Dict[str, Any], Optional[Dict[str, Any]]], None]


class DatabaseManager:
    """
    Database management class for the campus portal.
    Handles connection management, schema creation and the table CRUD
    interface used by every manager module.
    """

    def __init__(self, db_path, timeout: float = 30.0, seed_defaults: bool = True):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file
            timeout (float): Seconds to wait on a locked database
            seed_defaults (bool): Insert sample data into empty tables
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.seed_defaults = seed_defaults
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._listeners: List[ChangeListener] = []
        self._columns_cache: Dict[str, List[str]] = {}

        directory = os.path.dirname(self.db_path)
        if self.db_path != ':memory:' and directory:
            os.makedirs(directory, exist_ok=True)

        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections for thread safety.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            self._local.connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=self.timeout
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA foreign_keys = ON")

        try:
            yield self._local.connection
        except Exception as e:
            self._local.connection.rollback()
            self.logger.error(f"Database operation failed: {str(e)}")
            raise

    def initialize_database(self):
        """
        Create all necessary tables and initial data.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS profiles (
                        id TEXT PRIMARY KEY,
                        user_id TEXT UNIQUE NOT NULL,
                        full_name VARCHAR(100) NOT NULL,
                        email VARCHAR(100) UNIQUE NOT NULL,
                        role VARCHAR(20) DEFAULT 'student',
                        student_id VARCHAR(20),
                        department VARCHAR(100),
                        year INTEGER,
                        phone VARCHAR(20),
                        avatar_url TEXT,
                        hostel_id TEXT,
                        room_number VARCHAR(20),
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance_qr_codes (
                        id TEXT PRIMARY KEY,
                        code VARCHAR(64) UNIQUE NOT NULL,
                        class_subject VARCHAR(100) NOT NULL,
                        class_type VARCHAR(20) NOT NULL,
                        time_slot VARCHAR(50) NOT NULL,
                        location VARCHAR(100),
                        date DATE NOT NULL,
                        created_at TIMESTAMP NOT NULL,
                        expires_at TIMESTAMP NOT NULL,
                        is_active BOOLEAN DEFAULT 1,
                        teacher_id TEXT NOT NULL,
                        FOREIGN KEY (teacher_id) REFERENCES profiles(id)
                    )
                """)

                # The composite unique key is the storage-level guard against
                # duplicate redemptions for one class session.
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS attendance (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        date DATE NOT NULL,
                        time_slot VARCHAR(50) NOT NULL,
                        class_subject VARCHAR(100) NOT NULL,
                        class_type VARCHAR(20) NOT NULL,
                        status VARCHAR(20) DEFAULT 'present',
                        location VARCHAR(100),
                        marked_at TIMESTAMP NOT NULL,
                        marked_by TEXT,
                        qr_code_id TEXT,
                        FOREIGN KEY (user_id) REFERENCES profiles(id),
                        FOREIGN KEY (marked_by) REFERENCES profiles(id),
                        FOREIGN KEY (qr_code_id) REFERENCES attendance_qr_codes(id),
                        UNIQUE(user_id, date, time_slot, class_subject)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS events (
                        id TEXT PRIMARY KEY,
                        title VARCHAR(200) NOT NULL,
                        description TEXT,
                        event_type VARCHAR(50) NOT NULL,
                        start_date TIMESTAMP NOT NULL,
                        end_date TIMESTAMP NOT NULL,
                        location VARCHAR(200),
                        capacity INTEGER,
                        registered_count INTEGER DEFAULT 0,
                        registration_required BOOLEAN DEFAULT 1,
                        registration_deadline TIMESTAMP,
                        organizer_id TEXT NOT NULL,
                        status VARCHAR(20) DEFAULT 'upcoming',
                        banner_url TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (organizer_id) REFERENCES profiles(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS event_registrations (
                        id TEXT PRIMARY KEY,
                        event_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        registration_date TIMESTAMP NOT NULL,
                        attendance_status VARCHAR(20) DEFAULT 'registered',
                        FOREIGN KEY (event_id) REFERENCES events(id),
                        FOREIGN KEY (user_id) REFERENCES profiles(id),
                        UNIQUE(event_id, user_id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS complaints (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        subject VARCHAR(200) NOT NULL,
                        description TEXT NOT NULL,
                        category VARCHAR(50) NOT NULL,
                        priority VARCHAR(20) DEFAULT 'medium',
                        status VARCHAR(20) DEFAULT 'pending',
                        assigned_to TEXT,
                        resolution_notes TEXT,
                        resolved_at TIMESTAMP,
                        attachments TEXT,
                        created_at TIMESTAMP NOT NULL,
                        updated_at TIMESTAMP NOT NULL,
                        FOREIGN KEY (user_id) REFERENCES profiles(id),
                        FOREIGN KEY (assigned_to) REFERENCES profiles(id)
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS hostels (
                        id TEXT PRIMARY KEY,
                        name VARCHAR(100) UNIQUE NOT NULL,
                        type VARCHAR(20) NOT NULL,
                        address TEXT,
                        capacity INTEGER NOT NULL,
                        current_occupancy INTEGER DEFAULT 0,
                        warden_id TEXT,
                        amenities TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS rooms (
                        id TEXT PRIMARY KEY,
                        hostel_id TEXT NOT NULL,
                        room_number VARCHAR(20) NOT NULL,
                        capacity INTEGER NOT NULL,
                        current_occupancy INTEGER DEFAULT 0,
                        rent_per_month REAL,
                        status VARCHAR(20) DEFAULT 'available',
                        amenities TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (hostel_id) REFERENCES hostels(id),
                        UNIQUE(hostel_id, room_number)
                    )
                """)

                cursor.execute("CREATE INDEX IF NOT EXISTS idx_qr_codes_date ON attendance_qr_codes(date)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance(date)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_user ON attendance(user_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_date)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_complaints_user ON complaints(user_id)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_rooms_hostel ON rooms(hostel_id)")

                conn.commit()

                if self.seed_defaults:
                    self._insert_default_data(cursor)
                    conn.commit()

                self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def _insert_default_data(self, cursor):
        """
        Insert a default administrator and sample hostels into empty tables.

        Args:
            cursor: Database cursor object
        """
        cursor.execute("SELECT COUNT(*) FROM profiles WHERE role = 'admin'")
        if cursor.fetchone()[0] == 0:
            cursor.execute("""
                INSERT INTO profiles (id, user_id, full_name, email, role, department)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (str(uuid.uuid4()), 'admin', 'System Administrator',
                  'admin@campus.edu', 'admin', 'Administration'))

        cursor.execute("SELECT COUNT(*) FROM hostels")
        if cursor.fetchone()[0] == 0:
            sample_hostels = [
                (str(uuid.uuid4()), 'North Hall', 'boys', 'North Campus', 200,
                 json.dumps(['wifi', 'laundry', 'mess'])),
                (str(uuid.uuid4()), 'South Hall', 'girls', 'South Campus', 180,
                 json.dumps(['wifi', 'gym', 'mess'])),
            ]
            cursor.executemany("""
                INSERT INTO hostels (id, name, type, address, capacity, amenities)
                VALUES (?, ?, ?, ?, ?, ?)
            """, sample_hostels)

        self.logger.info("Default data inserted successfully")

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]
                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    # ------------------------------------------------------------------
    # Table interface
    # ------------------------------------------------------------------

    def add_change_listener(self, listener: ChangeListener) -> None:
        """Register a callable invoked as ``listener(table, event, record, old_record)``."""
        self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
               order_by: Optional[str] = None, descending: bool = False,
               limit: Optional[int] = None,
               embed: Optional[Dict[str, Tuple[str, str]]] = None
               ) -> Tuple[Optional[List[Dict[str, Any]]], Optional[StorageError]]:
        """
        Select rows from a table.

        Args:
            table (str): Table name
            filters (dict): Column filters; a plain value means equality, a
                ``(operator, value)`` tuple selects one of FILTER_OPERATORS
            order_by (str): Column to order by
            descending (bool): Sort direction
            limit (int): Maximum number of rows
            embed (dict): ``{key: (related_table, foreign_key_column)}``; each
                row gets ``row[key]`` set to the related row (or None)

        Returns:
            tuple: (rows, None) on success, (None, StorageError) on failure
        """
        try:
            columns = self._table_columns(table)
            where_sql, params = self._build_where(table, filters, columns)

            query = f"SELECT * FROM {table}{where_sql}"
            direction = 'DESC' if descending else 'ASC'
            if order_by:
                self._check_column(table, order_by, columns)
                query += f" ORDER BY {order_by} {direction}, rowid {direction}"
            else:
                query += " ORDER BY rowid ASC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(int(limit))

            rows = [self._decode_row(row) for row in self.execute_query(query, params)]

            for key, (related_table, foreign_key) in (embed or {}).items():
                self._embed_related(rows, key, related_table, foreign_key)

            return rows, None

        except StorageError as e:
            return None, e
        except sqlite3.Error as e:
            self.logger.error(f"Select on {table} failed: {str(e)}")
            return None, self._to_storage_error(e)

    def insert(self, table: str, rows
               ) -> Tuple[Optional[List[Dict[str, Any]]], Optional[StorageError]]:
        """
        Insert one or more rows atomically.

        Args:
            table (str): Table name
            rows (dict or list): Row or rows to insert; ``id`` is generated
                when absent

        Returns:
            tuple: (inserted rows, None) on success, (None, StorageError) on failure
        """
        if isinstance(rows, dict):
            rows = [rows]

        try:
            columns = self._table_columns(table)
            prepared = []
            for row in rows:
                row = dict(row)
                row.setdefault('id', str(uuid.uuid4()))
                for column in row:
                    self._check_column(table, column, columns)
                prepared.append(self._encode_row(row))

            with self._write_lock:
                with self.get_connection() as conn:
                    cursor = conn.cursor()
                    try:
                        for row in prepared:
                            names = ', '.join(row.keys())
                            placeholders = ', '.join('?' for _ in row)
                            cursor.execute(
                                f"INSERT INTO {table} ({names}) VALUES ({placeholders})",
                                tuple(row.values())
                            )
                        conn.commit()
                    except sqlite3.Error:
                        conn.rollback()
                        raise

                inserted, error = self.select(table, {'id': ('in', [row['id'] for row in prepared])})
                if error:
                    return None, error
                for record in inserted:
                    self._notify(table, 'INSERT', record, None)

            return inserted, None

        except StorageError as e:
            return None, e
        except sqlite3.Error as e:
            self.logger.error(f"Insert into {table} failed: {str(e)}")
            return None, self._to_storage_error(e)

    def update(self, table: str, filters: Dict[str, Any], patch: Dict[str, Any]
               ) -> Tuple[Optional[List[Dict[str, Any]]], Optional[StorageError]]:
        """
        Update every row matching the filters.

        Args:
            table (str): Table name
            filters (dict): Column filters, same format as select
            patch (dict): Column values to set

        Returns:
            tuple: (updated rows, None) on success, (None, StorageError) on failure
        """
        if not patch:
            return [], None

        try:
            columns = self._table_columns(table)
            for column in patch:
                self._check_column(table, column, columns)
            encoded = self._encode_row(dict(patch))
            if 'updated_at' in columns and 'updated_at' not in encoded:
                encoded['updated_at'] = datetime.now().isoformat(timespec='seconds')

            with self._write_lock:
                before, error = self.select(table, filters)
                if error:
                    return None, error
                if not before:
                    return [], None

                ids = [row['id'] for row in before]
                assignments = ', '.join(f"{column} = ?" for column in encoded)
                placeholders = ', '.join('?' for _ in ids)

                with self.get_connection() as conn:
                    try:
                        conn.execute(
                            f"UPDATE {table} SET {assignments} WHERE id IN ({placeholders})",
                            tuple(encoded.values()) + tuple(ids)
                        )
                        conn.commit()
                    except sqlite3.Error:
                        conn.rollback()
                        raise

                after, error = self.select(table, {'id': ('in', ids)})
                if error:
                    return None, error
                old_by_id = {row['id']: row for row in before}
                for record in after:
                    self._notify(table, 'UPDATE', record, old_by_id.get(record['id']))

            return after, None

        except StorageError as e:
            return None, e
        except sqlite3.Error as e:
            self.logger.error(f"Update of {table} failed: {str(e)}")
            return None, self._to_storage_error(e)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _table_columns(self, table: str) -> List[str]:
        if table not in self._columns_cache:
            rows = self.execute_query(
                "SELECT name FROM pragma_table_info(?)", (table,)
            )
            if not rows:
                raise StorageError(f"Unknown table: {table}", code='unknown_table')
            self._columns_cache[table] = [row['name'] for row in rows]
        return self._columns_cache[table]

    def _check_column(self, table: str, column: str, columns: List[str]) -> None:
        if column not in columns:
            raise StorageError(f"Unknown column {column} on {table}", code='unknown_column')

    def _build_where(self, table, filters, columns) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []

        for column, condition in (filters or {}).items():
            self._check_column(table, column, columns)

            if isinstance(condition, tuple):
                operator, value = condition
                if operator not in FILTER_OPERATORS:
                    raise StorageError(f"Unsupported filter operator: {operator}",
                                       code='bad_filter')
            else:
                operator, value = 'eq', condition

            if operator == 'in':
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(self._encode_value(column, v) for v in values)
            elif value is None and operator in ('eq', 'neq'):
                clauses.append(f"{column} IS {'NOT ' if operator == 'neq' else ''}NULL")
            else:
                clauses.append(f"{column} {FILTER_OPERATORS[operator]} ?")
                params.append(self._encode_value(column, value))

        where_sql = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where_sql, params

    def _embed_related(self, rows, key, related_table, foreign_key) -> None:
        ids = {row[foreign_key] for row in rows if row.get(foreign_key)}
        related, error = self.select(related_table, {'id': ('in', list(ids))})
        if error:
            raise error
        related_by_id = {item['id']: item for item in related}
        for row in rows:
            row[key] = related_by_id.get(row.get(foreign_key))

    @staticmethod
    def _encode_value(column, value):
        if column in JSON_COLUMNS and isinstance(value, (list, dict)):
            return json.dumps(value)
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def _encode_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return {column: self._encode_value(column, value) for column, value in row.items()}

    @staticmethod
    def _decode_row(row: Dict[str, Any]) -> Dict[str, Any]:
        for column in BOOLEAN_COLUMNS & row.keys():
            if row[column] is not None:
                row[column] = bool(row[column])
        for column in JSON_COLUMNS & row.keys():
            row[column] = json.loads(row[column]) if row[column] else []
        return row

    def _notify(self, table, event_type, record, old_record) -> None:
        for listener in list(self._listeners):
            try:
                listener(table, event_type, dict(record), old_record)
            except Exception as e:
                self.logger.error(f"Change listener failed for {table} {event_type}: {str(e)}")

    @staticmethod
    def _to_storage_error(error: sqlite3.Error) -> StorageError:
        if isinstance(error, sqlite3.IntegrityError) and 'UNIQUE' in str(error):
            return StorageError(str(error), code=StorageError.UNIQUE_VIOLATION)
        return StorageError(str(error))

    def close_all_connections(self):
        """Close the current thread's database connection."""
        try:
            if hasattr(self._local, 'connection'):
                self._local.connection.close()
                del self._local.connection
        except Exception as e:
            self.logger.error(f"Error closing connections: {str(e)}")
