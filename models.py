from dataclasses import dataclass, field
from datetime import date as date_type, datetime, timedelta
from enum import Enum
from typing import Optional

class Role(str, Enum):
    STUDENT = "Student"
    TEACHER = "Teacher"
    ADMIN = "Admin"

class EventStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

@dataclass
class Event:
    id: str
    title: str
    description: str
    venue: str
    date: date_type
    capacity: int
    created_by: str  # user_id of creator
    time: Optional[str] = None  # "HH:MM"
    type_of_event: Optional[str] = None
    duration_hours: float = 1.0
    status: EventStatus = EventStatus.PENDING
    participants: list[str] = field(default_factory=list)
    reminders: list[str] = field(default_factory=list)
    image: Optional[str] = None
    average_rating: float = 0.0
    total_reviews: int = 0
    created_at: Optional[datetime] = None

    @property
    def remaining_slots(self) -> int:
        return self.capacity - len(self.participants)

    @property
    def is_full(self) -> bool:
        return self.remaining_slots <= 0

    def starts_at(self) -> datetime:
        """Start of the event; events without a time start at midnight."""
        hour, minute = (int(p) for p in self.time.split(":")) if self.time else (0, 0)
        return datetime(self.date.year, self.date.month, self.date.day, hour, minute)

    def ends_at(self) -> datetime:
        return self.starts_at() + timedelta(hours=self.duration_hours)

    def display_details(self) -> dict:
        """Return the event as a JSON-ready dict."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "venue": self.venue,
            "date": self.date.isoformat(),
            "time": self.time,
            "type_of_event": self.type_of_event,
            "duration_hours": self.duration_hours,
            "capacity": self.capacity,
            "participants": list(self.participants),
            "remaining_slots": self.remaining_slots,
            "status": self.status.value,
            "created_by": self.created_by,
            "reminders": list(self.reminders),
            "image": self.image,
            "average_rating": self.average_rating,
            "total_reviews": self.total_reviews,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

@dataclass
class User:
    id: str
    name: str
    email: str
    password: str  # bcrypt hash
    role: Role = Role.STUDENT
    active: bool = True
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def display_details(self) -> dict:
        """Public view of the user; never includes the password hash."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "active": self.active,
            "avatar": self.avatar,
        }

@dataclass
class Feedback:
    id: str
    event_id: str
    author_id: str
    rating: int
    comment: str
    created_at: datetime

    def display_details(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "author_id": self.author_id,
            "rating": self.rating,
            "comment": self.comment,
            "created_at": self.created_at.isoformat(),
        }
