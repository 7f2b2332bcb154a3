import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime

# Outcomes of Database.add_participant
JOINED = "joined"
EVENT_MISSING = "event_missing"
ALREADY_JOINED = "already_joined"
EVENT_FULL = "event_full"
EVENT_REJECTED = "event_rejected"

EVENT_COLUMNS = (
    "id", "title", "description", "venue", "date", "time", "type_of_event",
    "duration_hours", "capacity", "status", "created_by", "reminders", "image",
    "average_rating", "total_reviews", "created_at",
)
UPDATABLE_EVENT_COLUMNS = (
    "title", "description", "venue", "date", "time", "type_of_event",
    "duration_hours", "capacity", "reminders", "image",
)
USER_COLUMNS = ("id", "name", "email", "password", "role", "active", "avatar", "created_at")
UPDATABLE_USER_COLUMNS = ("name", "email", "role", "active", "avatar")

class Database:
    def __init__(self, db_name="events.db"):
        """
        Initialize SQLite database connection.

        The connection is shared by the request threads; every statement runs
        under self.lock and writes run inside BEGIN IMMEDIATE transactions.
        """
        self.conn = sqlite3.connect(db_name, check_same_thread=False, isolation_level=None)
        self.lock = threading.RLock()
        self.create_tables()

    @contextmanager
    def transaction(self):
        """Serialized write transaction; rolls back if the block raises."""
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
            else:
                cursor.execute("COMMIT")

    def _query(self, sql, params=()):
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute(sql, params)
            return cursor.fetchall()

    def create_tables(self):
        """Create database tables with appropriate indexes."""
        with self.transaction() as cursor:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    role TEXT NOT NULL CHECK(role IN ('Student', 'Teacher', 'Admin')),
                    active INTEGER NOT NULL DEFAULT 1,
                    avatar TEXT,
                    created_at TEXT NOT NULL
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    venue TEXT NOT NULL,
                    date TEXT NOT NULL,
                    time TEXT,
                    type_of_event TEXT,
                    duration_hours REAL NOT NULL,
                    capacity INTEGER NOT NULL CHECK(capacity >= 1),
                    status TEXT NOT NULL CHECK(status IN ('pending', 'approved', 'rejected')),
                    created_by TEXT NOT NULL,
                    reminders TEXT NOT NULL DEFAULT '[]',
                    image TEXT,
                    average_rating REAL NOT NULL DEFAULT 0,
                    total_reviews INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (created_by) REFERENCES users(id)
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS event_participants (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    joined_at TEXT NOT NULL,
                    FOREIGN KEY (event_id) REFERENCES events(id),
                    FOREIGN KEY (user_id) REFERENCES users(id),
                    UNIQUE (event_id, user_id)
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS feedback (
                    id TEXT PRIMARY KEY,
                    event_id TEXT NOT NULL,
                    author_id TEXT NOT NULL,
                    rating INTEGER NOT NULL CHECK(rating BETWEEN 1 AND 5),
                    comment TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (event_id) REFERENCES events(id),
                    FOREIGN KEY (author_id) REFERENCES users(id)
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS schedule (
                    event_id TEXT PRIMARY KEY,
                    start_ts REAL NOT NULL,
                    end_ts REAL NOT NULL,
                    FOREIGN KEY (event_id) REFERENCES events(id)
                )
            ''')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_status ON events(status)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_created_by ON events(created_by)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_event_participants_event_id ON event_participants(event_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_feedback_event_id ON feedback(event_id)')

    def clear(self):
        """Delete every row; used by the test suite."""
        with self.transaction() as cursor:
            for table in ("feedback", "event_participants", "schedule", "events", "users"):
                cursor.execute(f'DELETE FROM {table}')

    # -------------------------------
    # Users
    # -------------------------------
    def _user_row(self, row):
        user = dict(zip(USER_COLUMNS, row))
        user["active"] = bool(user["active"])
        return user

    def add_user(self, user):
        """Add a user to the database. Returns False if the email is taken."""
        created_at = (user.created_at or datetime.now()).isoformat()
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT OR IGNORE INTO users (id, name, email, password, role, active, avatar, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (user.id, user.name, user.email, user.password, user.role.value, int(user.active), user.avatar, created_at))
            return cursor.rowcount > 0

    def get_user(self, user_id):
        rows = self._query(f'SELECT {", ".join(USER_COLUMNS)} FROM users WHERE id = ?', (user_id,))
        return self._user_row(rows[0]) if rows else None

    def get_user_by_email(self, email):
        """Retrieve a user by email."""
        rows = self._query(f'SELECT {", ".join(USER_COLUMNS)} FROM users WHERE email = ?', (email,))
        return self._user_row(rows[0]) if rows else None

    def list_users(self):
        rows = self._query(f'SELECT {", ".join(USER_COLUMNS)} FROM users ORDER BY created_at, name')
        return [self._user_row(r) for r in rows]

    def count_users(self):
        return self._query('SELECT COUNT(*) FROM users')[0][0]

    def update_user(self, user_id, updates):
        """Update the supplied user columns. Raises sqlite3.IntegrityError on a duplicate email."""
        updates = {k: v for k, v in updates.items() if k in UPDATABLE_USER_COLUMNS}
        if not updates:
            return self.get_user(user_id) is not None
        if "active" in updates:
            updates["active"] = int(updates["active"])
        set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
        with self.transaction() as cursor:
            cursor.execute(f'UPDATE users SET {set_clause} WHERE id = ?', list(updates.values()) + [user_id])
            return cursor.rowcount > 0

    # -------------------------------
    # Events
    # -------------------------------
    def _event_row(self, cursor, row):
        event = dict(zip(EVENT_COLUMNS, row))
        event["reminders"] = json.loads(event["reminders"])
        cursor.execute(
            'SELECT user_id FROM event_participants WHERE event_id = ? ORDER BY seq',
            (event["id"],),
        )
        event["participants"] = [r[0] for r in cursor.fetchall()]
        return event

    def _select_events(self, where="", params=()):
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute(f'SELECT {", ".join(EVENT_COLUMNS)} FROM events {where} ORDER BY date, time, created_at', params)
            rows = cursor.fetchall()
            return [self._event_row(cursor, r) for r in rows]

    def add_event(self, event):
        """Add an event to the database."""
        created_at = (event.created_at or datetime.now()).isoformat()
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT OR IGNORE INTO events (id, title, description, venue, date, time, type_of_event,
                    duration_hours, capacity, status, created_by, reminders, image, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (event.id, event.title, event.description, event.venue, event.date.isoformat(), event.time,
                  event.type_of_event, event.duration_hours, event.capacity, event.status.value,
                  event.created_by, json.dumps(event.reminders), event.image, created_at))
            return cursor.rowcount > 0

    def get_event(self, event_id):
        """Retrieve an event by ID, participants in join order."""
        events = self._select_events('WHERE id = ?', (event_id,))
        return events[0] if events else None

    def list_events(self, status=None, created_by=None):
        """Retrieve events, optionally filtered by status and/or creator."""
        clauses, params = [], []
        if status is not None:
            clauses.append('status = ?')
            params.append(status)
        if created_by is not None:
            clauses.append('created_by = ?')
            params.append(created_by)
        where = f'WHERE {" AND ".join(clauses)}' if clauses else ''
        return self._select_events(where, tuple(params))

    def list_visible_events(self, user_id):
        """Approved events plus every event created by user_id."""
        return self._select_events('WHERE status = ? OR created_by = ?', ('approved', user_id))

    def list_available_events(self):
        """Approved events that still have free slots."""
        return self._select_events('''
            WHERE status = 'approved'
              AND capacity > (SELECT COUNT(*) FROM event_participants ep WHERE ep.event_id = events.id)
        ''')

    def list_joined_events(self, user_id):
        return self._select_events(
            'WHERE id IN (SELECT event_id FROM event_participants WHERE user_id = ?)', (user_id,)
        )

    def update_event(self, event_id, updates):
        """
        Update the supplied event columns.

        A new capacity is only written if it still holds every current
        participant; returns False when the event is missing or the capacity
        guard rejects the update.
        """
        updates = {k: v for k, v in updates.items() if k in UPDATABLE_EVENT_COLUMNS}
        if "reminders" in updates:
            updates["reminders"] = json.dumps(updates["reminders"])
        if "date" in updates:
            updates["date"] = updates["date"].isoformat()
        if not updates:
            return self.get_event(event_id) is not None
        set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
        sql = f'UPDATE events SET {set_clause} WHERE id = ?'
        params = list(updates.values()) + [event_id]
        if "capacity" in updates:
            sql += ' AND ? >= (SELECT COUNT(*) FROM event_participants WHERE event_id = ?)'
            params += [updates["capacity"], event_id]
        with self.transaction() as cursor:
            cursor.execute(sql, params)
            return cursor.rowcount > 0

    def set_event_status(self, event_id, status, from_status):
        """Move an event to status only if it is currently in from_status."""
        with self.transaction() as cursor:
            cursor.execute(
                'UPDATE events SET status = ? WHERE id = ? AND status = ?',
                (status, event_id, from_status),
            )
            return cursor.rowcount > 0

    def delete_event(self, event_id):
        """Delete an event together with its participants, feedback and schedule entry."""
        with self.transaction() as cursor:
            cursor.execute('DELETE FROM event_participants WHERE event_id = ?', (event_id,))
            cursor.execute('DELETE FROM feedback WHERE event_id = ?', (event_id,))
            cursor.execute('DELETE FROM schedule WHERE event_id = ?', (event_id,))
            cursor.execute('DELETE FROM events WHERE id = ?', (event_id,))
            return cursor.rowcount > 0

    # -------------------------------
    # Participants
    # -------------------------------
    def add_participant(self, event_id, user_id):
        """
        Append user_id to the event's participants.

        The capacity check and the insert are a single conditional statement,
        so concurrent joins can never push the count past capacity.
        """
        with self.transaction() as cursor:
            cursor.execute('SELECT status FROM events WHERE id = ?', (event_id,))
            row = cursor.fetchone()
            if row is None:
                return EVENT_MISSING
            if row[0] == 'rejected':
                return EVENT_REJECTED
            cursor.execute(
                'SELECT 1 FROM event_participants WHERE event_id = ? AND user_id = ?',
                (event_id, user_id),
            )
            if cursor.fetchone() is not None:
                return ALREADY_JOINED
            cursor.execute('''
                INSERT INTO event_participants (event_id, user_id, joined_at)
                SELECT ?, ?, ?
                WHERE (SELECT COUNT(*) FROM event_participants WHERE event_id = ?)
                    < (SELECT capacity FROM events WHERE id = ?)
            ''', (event_id, user_id, datetime.now().isoformat(), event_id, event_id))
            return JOINED if cursor.rowcount > 0 else EVENT_FULL

    def remove_participant(self, event_id, user_id):
        with self.transaction() as cursor:
            cursor.execute(
                'DELETE FROM event_participants WHERE event_id = ? AND user_id = ?',
                (event_id, user_id),
            )
            return cursor.rowcount > 0

    def list_participants(self, event_id):
        """Retrieve id, name and email of every participant, in join order."""
        rows = self._query('''
            SELECT u.id, u.name, u.email FROM event_participants ep
            JOIN users u ON u.id = ep.user_id
            WHERE ep.event_id = ?
            ORDER BY ep.seq
        ''', (event_id,))
        return [{"id": r[0], "name": r[1], "email": r[2]} for r in rows]

    # -------------------------------
    # Feedback
    # -------------------------------
    def add_feedback(self, feedback):
        """Insert feedback and refresh the event's rating aggregates. Returns False if the event is missing."""
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT INTO feedback (id, event_id, author_id, rating, comment, created_at)
                SELECT ?, ?, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM events WHERE id = ?)
            ''', (feedback.id, feedback.event_id, feedback.author_id, feedback.rating, feedback.comment,
                  feedback.created_at.isoformat(), feedback.event_id))
            if cursor.rowcount == 0:
                return False
            cursor.execute('''
                UPDATE events SET
                    average_rating = (SELECT AVG(rating) FROM feedback WHERE event_id = ?),
                    total_reviews = (SELECT COUNT(*) FROM feedback WHERE event_id = ?)
                WHERE id = ?
            ''', (feedback.event_id, feedback.event_id, feedback.event_id))
            return True

    def list_feedback(self, event_id):
        """Retrieve feedback for an event, newest first."""
        rows = self._query('''
            SELECT id, event_id, author_id, rating, comment, created_at FROM feedback
            WHERE event_id = ?
            ORDER BY created_at DESC
        ''', (event_id,))
        return [{
            "id": r[0], "event_id": r[1], "author_id": r[2],
            "rating": r[3], "comment": r[4], "created_at": r[5]
        } for r in rows]

    # -------------------------------
    # Schedule
    # -------------------------------
    def add_schedule(self, event_id, start_ts, end_ts):
        """Add an approved event to the schedule table. Returns False if the event is gone or not approved."""
        with self.transaction() as cursor:
            cursor.execute('''
                INSERT OR REPLACE INTO schedule (event_id, start_ts, end_ts)
                SELECT ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM events WHERE id = ? AND status = 'approved')
            ''', (event_id, start_ts, end_ts, event_id))
            return cursor.rowcount > 0

    def remove_schedule(self, event_id):
        """Remove an event from the schedule table."""
        with self.transaction() as cursor:
            cursor.execute('DELETE FROM schedule WHERE event_id = ?', (event_id,))

    def get_schedule(self):
        """Retrieve all scheduled events."""
        return [(r[0], r[1], r[2]) for r in self._query('SELECT event_id, start_ts, end_ts FROM schedule')]

    def close(self):
        """Close the database connection."""
        self.conn.close()
