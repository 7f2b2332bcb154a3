import heapq
import logging
import sqlite3
import threading
import uuid
from datetime import datetime

from intervaltree import IntervalTree
from passlib.hash import bcrypt

import database
from database import Database
from errors import (
    AlreadyJoinedError,
    AuthorizationError,
    CapacityExceededError,
    ConflictError,
    NotFoundError,
    NotJoinedError,
    ValidationError,
)
from models import Event, EventStatus, Feedback, Role, User
from utils import authorize, can_view_event, generate_csv, parse_date, parse_time

logger = logging.getLogger(__name__)

REQUIRED_EVENT_FIELDS = ("title", "description", "venue")
MIN_PASSWORD_LENGTH = 6

def _require_text(value, name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name.capitalize()} is required")
    return str(value).strip()

def _require_capacity(capacity) -> int:
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise ValidationError("Capacity must be at least 1")
    return capacity

def _require_duration(duration_hours) -> float:
    if isinstance(duration_hours, bool) or not isinstance(duration_hours, (int, float)) or duration_hours <= 0:
        raise ValidationError("Duration must be positive")
    return float(duration_hours)

def _clean_reminders(reminders) -> list[str]:
    return [r.strip() for r in (reminders or []) if r and r.strip()]

def event_from_row(data: dict) -> Event:
    return Event(
        id=data["id"],
        title=data["title"],
        description=data["description"],
        venue=data["venue"],
        date=parse_date(data["date"]),
        capacity=data["capacity"],
        created_by=data["created_by"],
        time=data["time"],
        type_of_event=data["type_of_event"],
        duration_hours=data["duration_hours"],
        status=EventStatus(data["status"]),
        participants=data["participants"],
        reminders=data["reminders"],
        image=data["image"],
        average_rating=data["average_rating"],
        total_reviews=data["total_reviews"],
        created_at=datetime.fromisoformat(data["created_at"]),
    )

def load_visible_event(db: Database, actor: User, event_id: str) -> Event:
    """Load an event the actor may see; hidden events look missing."""
    data = db.get_event(event_id)
    if data is None:
        raise NotFoundError("Event not found")
    event = event_from_row(data)
    if not can_view_event(actor, event):
        raise NotFoundError("Event not found")
    return event

def user_from_row(data: dict) -> User:
    return User(
        id=data["id"],
        name=data["name"],
        email=data["email"],
        password=data["password"],
        role=Role(data["role"]),
        active=data["active"],
        avatar=data["avatar"],
        created_at=datetime.fromisoformat(data["created_at"]),
    )

class EventManager:
    """Event lifecycle: creation, approval state machine, updates and listings."""

    def __init__(self, db: Database, scheduler):
        """Initialize EventManager with database and scheduler."""
        self.db = db
        self.scheduler = scheduler

    def _load(self, event_id: str) -> Event | None:
        data = self.db.get_event(event_id)
        return event_from_row(data) if data else None

    def _require_event(self, event_id: str) -> Event:
        event = self._load(event_id)
        if event is None:
            raise NotFoundError("Event not found")
        return event

    def create_event(self, creator: User, fields: dict) -> Event:
        """Validate and persist a new pending event owned by creator."""
        authorize("create_event", creator)
        title, description, venue = (_require_text(fields.get(f), f) for f in REQUIRED_EVENT_FIELDS)
        event = Event(
            id=uuid.uuid4().hex,
            title=title,
            description=description,
            venue=venue,
            date=parse_date(fields.get("date")),
            capacity=_require_capacity(fields.get("capacity")),
            created_by=creator.id,
            time=parse_time(fields.get("time")),
            type_of_event=(fields.get("type_of_event") or "").strip() or None,
            duration_hours=_require_duration(fields.get("duration_hours", 1.0)),
            reminders=_clean_reminders(fields.get("reminders")),
            image=fields.get("image"),
            created_at=datetime.now(),
        )
        if not self.db.add_event(event):
            raise ConflictError("Event ID already exists")
        logger.info(f"Event {event.id} created by {creator.id}")
        return event

    def get_event(self, actor: User, event_id: str) -> Event:
        """Retrieve an event the actor is allowed to see."""
        event = self._load(event_id)
        if event is None or not can_view_event(actor, event):
            raise NotFoundError("Event not found")
        return event

    def approve_event(self, actor: User, event_id: str) -> Event:
        """pending -> approved. Approving an approved event is a no-op."""
        authorize("approve_event", actor)
        event = self._require_event(event_id)
        if event.status is EventStatus.APPROVED:
            return event
        if event.status is EventStatus.REJECTED:
            raise ConflictError("Rejected events cannot be approved")
        if not self.db.set_event_status(event_id, EventStatus.APPROVED.value, EventStatus.PENDING.value):
            # Another request changed the status first.
            event = self._require_event(event_id)
            if event.status is not EventStatus.APPROVED:
                raise ConflictError("Event status changed, please retry")
            return event
        event = self._require_event(event_id)
        if not self.scheduler.schedule_event(event):
            # Deleted while being approved.
            event = self._require_event(event_id)
        logger.info(f"Event {event_id} approved by {actor.id}")
        return event

    def reject_event(self, actor: User, event_id: str) -> Event:
        """pending -> rejected. Approved events stay approved."""
        authorize("reject_event", actor)
        event = self._require_event(event_id)
        if event.status is EventStatus.REJECTED:
            return event
        if event.status is EventStatus.APPROVED:
            raise ConflictError("Approved events cannot be rejected")
        if not self.db.set_event_status(event_id, EventStatus.REJECTED.value, EventStatus.PENDING.value):
            event = self._require_event(event_id)
            if event.status is not EventStatus.REJECTED:
                raise ConflictError("Event status changed, please retry")
            return event
        logger.info(f"Event {event_id} rejected by {actor.id}")
        return self._require_event(event_id)

    def update_event(self, actor: User, event_id: str, fields: dict) -> Event:
        """Apply the supplied fields; status and participants never change here."""
        event = self._require_event(event_id)
        authorize("update_event", actor, event)
        updates = {}
        for name in REQUIRED_EVENT_FIELDS:
            if name in fields:
                updates[name] = _require_text(fields[name], name)
        if "date" in fields:
            updates["date"] = parse_date(fields["date"])
        if "time" in fields:
            updates["time"] = parse_time(fields["time"])
        if "type_of_event" in fields:
            updates["type_of_event"] = (fields["type_of_event"] or "").strip() or None
        if "duration_hours" in fields:
            updates["duration_hours"] = _require_duration(fields["duration_hours"])
        if "capacity" in fields:
            updates["capacity"] = _require_capacity(fields["capacity"])
        if "reminders" in fields:
            updates["reminders"] = _clean_reminders(fields["reminders"])
        if "image" in fields:
            updates["image"] = fields["image"]

        if not self.db.update_event(event_id, updates):
            current = self._require_event(event_id)
            raise ValidationError(
                f"Capacity cannot be lower than the current number of participants ({len(current.participants)})"
            )
        updated = self._require_event(event_id)
        if updated.status is EventStatus.APPROVED and {"date", "time", "duration_hours"} & updates.keys():
            self.scheduler.schedule_event(updated)
        logger.info(f"Event {event_id} updated by {actor.id}")
        return updated

    def delete_event(self, actor: User, event_id: str) -> None:
        """Delete an event along with its participants and feedback."""
        event = self._require_event(event_id)
        authorize("delete_event", actor, event)
        if not self.db.delete_event(event_id):
            raise NotFoundError("Event not found")
        self.scheduler.remove_event(event_id)
        logger.info(f"Event {event_id} deleted by {actor.id}")

    def list_events(self, actor: User) -> list[Event]:
        """Admins see everything; everyone else sees approved events plus their own."""
        rows = self.db.list_events() if actor.is_admin else self.db.list_visible_events(actor.id)
        return [event_from_row(r) for r in rows]

    def list_available_events(self) -> list[Event]:
        """Approved events that can still be joined."""
        return [event_from_row(r) for r in self.db.list_available_events()]

    def list_my_events(self, actor: User) -> list[Event]:
        return [event_from_row(r) for r in self.db.list_events(created_by=actor.id)]

    def list_joined_events(self, actor: User) -> list[Event]:
        return [event_from_row(r) for r in self.db.list_joined_events(actor.id)]

    def list_pending_events(self, actor: User) -> list[Event]:
        authorize("list_pending_events", actor)
        return [event_from_row(r) for r in self.db.list_events(status=EventStatus.PENDING.value)]

    def export_participants(self, actor: User, event_id: str):
        """CSV buffer of the event's participants in join order."""
        event = self._require_event(event_id)
        authorize("export_participants", actor, event)
        logger.info(f"Participants exported for event {event_id} by {actor.id}")
        return generate_csv(self.db.list_participants(event_id))

class EnrollmentManager:
    """Join/leave bookkeeping against an event's participant list."""

    def __init__(self, db: Database):
        self.db = db

    def join_event(self, user: User, event_id: str) -> Event:
        load_visible_event(self.db, user, event_id)
        outcome = self.db.add_participant(event_id, user.id)
        if outcome == database.EVENT_MISSING:
            raise NotFoundError("Event not found")
        if outcome == database.EVENT_REJECTED:
            raise ConflictError("Rejected events cannot be joined")
        if outcome == database.ALREADY_JOINED:
            raise AlreadyJoinedError("You have already joined this event")
        if outcome == database.EVENT_FULL:
            logger.warning(f"User {user.id} rejected from full event {event_id}")
            raise CapacityExceededError("Event is full")
        logger.info(f"User {user.id} joined event {event_id}")
        return self._reload(event_id)

    def leave_event(self, user: User, event_id: str) -> Event:
        if self.db.get_event(event_id) is None:
            raise NotFoundError("Event not found")
        if not self.db.remove_participant(event_id, user.id):
            raise NotJoinedError("You have not joined this event")
        logger.info(f"User {user.id} left event {event_id}")
        return self._reload(event_id)

    @staticmethod
    def remaining_slots(event: Event) -> int:
        return event.remaining_slots

    def _reload(self, event_id: str) -> Event:
        data = self.db.get_event(event_id)
        if data is None:
            raise NotFoundError("Event not found")
        return event_from_row(data)

class FeedbackManager:
    def __init__(self, db: Database):
        self.db = db

    def submit_feedback(self, user: User, event_id: str, rating, comment) -> Feedback:
        """Record a rating and comment; the event's aggregates are refreshed in the same transaction."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5")
        if comment is None or not comment.strip():
            raise ValidationError("Comment is required")
        if load_visible_event(self.db, user, event_id).status is EventStatus.REJECTED:
            raise ConflictError("Rejected events cannot receive feedback")
        feedback = Feedback(
            id=uuid.uuid4().hex,
            event_id=event_id,
            author_id=user.id,
            rating=rating,
            comment=comment.strip(),
            created_at=datetime.now(),
        )
        if not self.db.add_feedback(feedback):
            raise NotFoundError("Event not found")
        logger.info(f"Feedback {feedback.id} submitted for event {event_id} by {user.id}")
        return feedback

    def list_feedback(self, actor: User, event_id: str) -> list[Feedback]:
        load_visible_event(self.db, actor, event_id)
        return [
            Feedback(
                id=f["id"], event_id=f["event_id"], author_id=f["author_id"], rating=f["rating"],
                comment=f["comment"], created_at=datetime.fromisoformat(f["created_at"]),
            )
            for f in self.db.list_feedback(event_id)
        ]

    @staticmethod
    def summarize(feedback: list[Feedback]) -> dict:
        """Average, count and per-star buckets (index 0 is one star)."""
        total = len(feedback)
        buckets = [sum(1 for f in feedback if f.rating == star) for star in range(1, 6)]
        average = sum(f.rating for f in feedback) / total if total else 0.0
        return {"average": average, "total": total, "buckets": buckets}

class UserManager:
    def __init__(self, db: Database):
        self.db = db

    def get_user(self, user_id: str) -> User | None:
        data = self.db.get_user(user_id)
        return user_from_row(data) if data else None

    def register(self, name: str, email: str, password: str, role: Role = Role.STUDENT, avatar=None) -> User:
        """Create an account. The first account ever registered becomes an admin."""
        name = _require_text(name, "name")
        email = _require_text(email, "email").lower()
        if "@" not in email:
            raise ValidationError("Invalid email address")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if role is Role.ADMIN:
            raise AuthorizationError("Admin accounts cannot be self-registered")
        if self.db.count_users() == 0:
            role = Role.ADMIN
        user = User(
            id=uuid.uuid4().hex,
            name=name,
            email=email,
            password=bcrypt.hash(password),
            role=role,
            avatar=avatar,
            created_at=datetime.now(),
        )
        if not self.db.add_user(user):
            raise ValidationError("User already exists")
        logger.info(f"User {email} registered with role {role.value}")
        return user

    def authenticate(self, email: str, password: str) -> User | None:
        data = self.db.get_user_by_email((email or "").strip().lower())
        if not data or not bcrypt.verify(password, data["password"]):
            return None
        user = user_from_row(data)
        if not user.active:
            raise AuthorizationError("Account is deactivated")
        return user

    def list_users(self, actor: User) -> list[User]:
        authorize("manage_users", actor)
        return [user_from_row(u) for u in self.db.list_users()]

    def _admin_update(self, actor: User, user_id: str, updates: dict) -> User:
        authorize("manage_users", actor)
        if not self.db.update_user(user_id, updates):
            raise NotFoundError("User not found")
        return self.get_user(user_id)

    def set_role(self, actor: User, user_id: str, role: Role) -> User:
        user = self._admin_update(actor, user_id, {"role": Role(role).value})
        logger.info(f"User {user_id} role set to {user.role.value} by {actor.id}")
        return user

    def set_active(self, actor: User, user_id: str, active: bool) -> User:
        user = self._admin_update(actor, user_id, {"active": bool(active)})
        logger.info(f"User {user_id} {'activated' if active else 'deactivated'} by {actor.id}")
        return user

    def update_profile(self, actor: User, name=None, email=None, avatar=None) -> User:
        """Update the caller's own name, email or avatar."""
        updates = {}
        if name is not None:
            updates["name"] = _require_text(name, "name")
        if email is not None:
            email = _require_text(email, "email").lower()
            if "@" not in email:
                raise ValidationError("Invalid email address")
            updates["email"] = email
        if avatar is not None:
            updates["avatar"] = avatar or None
        try:
            updated = self.db.update_user(actor.id, updates)
        except sqlite3.IntegrityError:
            raise ValidationError("Email already in use")
        if not updated:
            raise NotFoundError("User not found")
        logger.info(f"User {actor.id} updated their profile")
        return self.get_user(actor.id)

class Scheduler:
    """Timeline of approved events: an interval tree for windows, a heap for the next start."""

    def __init__(self, db: Database):
        """Initialize Scheduler with database and load existing schedule."""
        self.db = db
        self.lock = threading.RLock()
        self.event_queue = []
        self.intervals = IntervalTree()
        self.load_schedule()

    def load_schedule(self):
        """Load scheduled events from the database."""
        with self.lock:
            self.event_queue = []
            self.intervals = IntervalTree()
            for event_id, start_ts, end_ts in self.db.get_schedule():
                self.intervals[start_ts:end_ts] = event_id
                self.event_queue.append((start_ts, event_id))
            heapq.heapify(self.event_queue)

    def _discard(self, event_id: str):
        to_remove = [iv for iv in self.intervals if iv.data == event_id]
        for iv in to_remove:
            self.intervals.remove(iv)
        self.event_queue = [(t, eid) for t, eid in self.event_queue if eid != event_id]
        heapq.heapify(self.event_queue)

    def schedule_event(self, event: Event) -> bool:
        """
        Place an event on the timeline, replacing any earlier slot it had.

        The row is only written while the event exists and is approved;
        returns False (and leaves the timeline without it) otherwise.
        """
        start_ts = event.starts_at().timestamp()
        end_ts = event.ends_at().timestamp()
        with self.lock:
            self._discard(event.id)
            if not self.db.add_schedule(event.id, start_ts, end_ts):
                logger.warning(f"Event {event.id} not scheduled: missing or not approved")
                return False
            self.intervals[start_ts:end_ts] = event.id
            heapq.heappush(self.event_queue, (start_ts, event.id))
        return True

    def remove_event(self, event_id: str):
        """Remove an event from the schedule."""
        with self.lock:
            self._discard(event_id)
            self.db.remove_schedule(event_id)

    def upcoming(self, now: datetime | None = None) -> list[tuple[datetime, str]]:
        """Scheduled events starting at or after now, earliest first."""
        now_ts = (now or datetime.now()).timestamp()
        with self.lock:
            entries = sorted(entry for entry in self.event_queue if entry[0] >= now_ts)
        return [(datetime.fromtimestamp(start_ts), event_id) for start_ts, event_id in entries]

    def get_next_event(self, now: datetime | None = None) -> tuple[datetime, str] | None:
        """Retrieve the next scheduled event."""
        upcoming = self.upcoming(now)
        return upcoming[0] if upcoming else None

    def events_between(self, start: datetime, end: datetime) -> list[str]:
        """Ids of scheduled events overlapping [start, end), earliest first."""
        if end <= start:
            raise ValidationError("Window end must be after its start")
        with self.lock:
            overlapping = self.intervals.overlap(start.timestamp(), end.timestamp())
        return [iv.data for iv in sorted(overlapping, key=lambda iv: (iv.begin, iv.data))]
