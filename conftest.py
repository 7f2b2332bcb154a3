import os

os.environ["DATABASE_PATH"] = ":memory:"
os.environ.setdefault("SECRET_KEY", "test-secret")

import uuid
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from passlib.hash import bcrypt

from database import Database
from manager import EnrollmentManager, EventManager, FeedbackManager, Scheduler, UserManager
from models import Role, User

PASSWORD = "password123"
PASSWORD_HASH = bcrypt.hash(PASSWORD)

def _make_user(db, name, role=Role.STUDENT, active=True):
    user = User(
        id=uuid.uuid4().hex,
        name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        password=PASSWORD_HASH,
        role=role,
        active=active,
        created_at=datetime.now(),
    )
    db.add_user(user)
    return user

# -------------------------------
# Service fixtures (fresh database per test)
# -------------------------------
@pytest.fixture
def store():
    db = Database(":memory:")
    yield db
    db.close()

@pytest.fixture
def scheduler(store):
    return Scheduler(store)

@pytest.fixture
def events(store, scheduler):
    return EventManager(store, scheduler)

@pytest.fixture
def enrollment(store):
    return EnrollmentManager(store)

@pytest.fixture
def feedback(store):
    return FeedbackManager(store)

@pytest.fixture
def users(store):
    return UserManager(store)

@pytest.fixture
def admin(store):
    return _make_user(store, "Ada Admin", Role.ADMIN)

@pytest.fixture
def teacher(store):
    return _make_user(store, "Tom Teacher", Role.TEACHER)

@pytest.fixture
def student(store):
    return _make_user(store, "Sam Student")

@pytest.fixture
def event_fields():
    def build(**overrides):
        fields = {
            "title": "Python Workshop",
            "description": "Hands-on introduction to FastAPI",
            "date": "2030-05-01",
            "time": "10:00",
            "venue": "Room 204",
            "capacity": 2,
            "duration_hours": 2.0,
        }
        fields.update(overrides)
        return fields
    return build

@pytest.fixture
def approved_event(events, admin, teacher, event_fields):
    """Factory for a teacher's event that an admin has already approved."""
    def create(**overrides):
        event = events.create_event(teacher, event_fields(**overrides))
        return events.approve_event(admin, event.id)
    return create

# -------------------------------
# API fixtures (shared application database, wiped per test)
# -------------------------------
@pytest.fixture
def app_db():
    from main import db, scheduler as app_scheduler
    db.clear()
    app_scheduler.load_schedule()
    return db

@pytest.fixture
def client(app_db):
    from main import app
    return TestClient(app)

@pytest.fixture
def make_user():
    """Factory for users stored directly in a database."""
    return _make_user

@pytest.fixture
def auth_headers(client):
    """Log a user in through the API and return bearer headers."""
    def login(user):
        response = client.post("/login", json={"email": user.email, "password": PASSWORD})
        return {"Authorization": f"Bearer {response.json()['access_token']}"}
    return login
