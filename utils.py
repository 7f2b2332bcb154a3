from datetime import date, datetime
from io import StringIO
import csv
import re

from errors import AuthorizationError, ValidationError
from models import EventStatus, Role

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

def parse_date(date_str: str) -> date:
    """Parse an ISO date (or the date part of an ISO datetime)."""
    if isinstance(date_str, datetime):
        return date_str.date()
    if isinstance(date_str, date):
        return date_str
    if not date_str or not date_str.strip():
        raise ValidationError("Date is required")
    try:
        return datetime.fromisoformat(date_str.strip()).date()
    except ValueError:
        try:
            return datetime.strptime(date_str.strip(), "%Y-%m-%d %H:%M").date()
        except ValueError:
            raise ValidationError("Invalid date format")

def parse_time(time_str: str | None) -> str | None:
    """Validate an optional HH:MM start time."""
    if time_str is None or not time_str.strip():
        return None
    if not TIME_PATTERN.match(time_str.strip()):
        raise ValidationError("Invalid time format, expected HH:MM")
    return time_str.strip()

# -------------------------------
# Authorization policy
# -------------------------------
def _any_active_user(actor, event=None):
    return actor.active

def _admin_only(actor, event=None):
    return actor.role is Role.ADMIN

def _creator_or_admin(actor, event=None):
    return actor.role is Role.ADMIN or event.created_by == actor.id

POLICIES = {
    "create_event": (_any_active_user, "Your account is deactivated"),
    "approve_event": (_admin_only, "Only admins can approve events"),
    "reject_event": (_admin_only, "Only admins can reject events"),
    "list_pending_events": (_admin_only, "Only admins can review pending events"),
    "update_event": (_creator_or_admin, "Access denied: you are not the event creator"),
    "delete_event": (_creator_or_admin, "Access denied: you are not the event creator"),
    "export_participants": (_creator_or_admin, "Access denied: you are not the event creator"),
    "manage_users": (_admin_only, "Only admins can manage users"),
}

def authorize(action: str, actor, event=None):
    """Raise AuthorizationError unless actor may perform action (on event)."""
    allowed, message = POLICIES[action]
    if not allowed(actor, event):
        raise AuthorizationError(message)

def can_view_event(actor, event) -> bool:
    """Approved events are public; others only to their creator and admins."""
    return (
        event.status is EventStatus.APPROVED
        or actor.role is Role.ADMIN
        or event.created_by == actor.id
    )

def generate_csv(participants):
    """Generate a CSV string from a list of participants."""
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["ID", "Name", "Email"])
    for p in participants:
        writer.writerow([p["id"], p["name"], p["email"]])
    buffer.seek(0)
    return buffer
