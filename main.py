from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi import status
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Optional, List, Literal
from datetime import datetime
import logging
from contextlib import asynccontextmanager

from auth import db, user_manager, get_current_user, create_access_token, create_refresh_token, decode_token, oauth2_scheme
from config import CORS_ORIGINS, LOG_LEVEL
from errors import EventHubError, NotFoundError
from manager import EventManager, EnrollmentManager, FeedbackManager, Scheduler
from models import Role, User

# Logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

# FastAPI App
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Closing database connection")
    db.close()

app = FastAPI(title="Event Hub API", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# Init
scheduler = Scheduler(db)
event_manager = EventManager(db, scheduler)
enrollment_manager = EnrollmentManager(db)
feedback_manager = FeedbackManager(db)

# -------------------------------
# Error handlers
# -------------------------------
@app.exception_handler(EventHubError)
async def event_hub_error_handler(request: Request, exc: EventHubError):
    logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"][1:]) or err["loc"][0]
        problems.append(f"{field}: {err['msg']}")
    return JSONResponse(status_code=400, content={"message": "; ".join(problems)})

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)

# -------------------------------
# Schemas
# -------------------------------
class EventCreate(BaseModel):
    title: str
    description: str
    date: str
    venue: str
    capacity: int
    time: Optional[str] = None
    type_of_event: Optional[str] = None
    duration_hours: float = 1.0
    reminders: List[str] = []
    image: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "title": "Python Workshop",
                "description": "Hands-on introduction to FastAPI",
                "date": "2025-05-01",
                "time": "10:00",
                "venue": "Room 204",
                "capacity": 50,
                "duration_hours": 2.0,
                "type_of_event": "Workshop",
                "reminders": ["Bring a laptop"]
            }
        }

class EventUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    venue: Optional[str] = None
    capacity: Optional[int] = None
    time: Optional[str] = None
    type_of_event: Optional[str] = None
    duration_hours: Optional[float] = None
    reminders: Optional[List[str]] = None
    image: Optional[str] = None

class FeedbackCreate(BaseModel):
    rating: int
    comment: str

class UserRegister(BaseModel):
    name: str
    email: str
    password: str
    role: Literal["Student", "Teacher"] = "Student"
    avatar: Optional[str] = None

class UserLogin(BaseModel):
    email: str
    password: str

class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None

class RoleUpdate(BaseModel):
    role: Role

class ActiveUpdate(BaseModel):
    active: bool

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: dict

def _events(events):
    return [e.display_details() for e in events]

# -------------------------------
# Auth Routes
# -------------------------------
@app.post("/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register a new user")
def register(user: UserRegister):
    """Register a new user. The first account becomes an admin."""
    created = user_manager.register(user.name, user.email, user.password, Role(user.role), user.avatar)
    return {"message": "User registered", "data": created.display_details()}

@app.post("/login", response_model=TokenResponse, summary="Login and receive access/refresh tokens")
def login(user: UserLogin):
    """Authenticate user and return access and refresh tokens."""
    db_user = user_manager.authenticate(user.email, user.password)
    if db_user is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    access_token = create_access_token(data={"sub": db_user.id})
    refresh_token = create_refresh_token(data={"sub": db_user.id})
    logger.info(f"User {db_user.email} logged in")
    return {"access_token": access_token, "refresh_token": refresh_token, "user": db_user.display_details()}

@app.post("/refresh", response_model=dict, summary="Refresh access token")
def refresh(token: str = Depends(oauth2_scheme)):
    """Exchange a refresh token for a new access token."""
    token_data = decode_token(token, "refresh")
    user = user_manager.get_user(token_data.user_id)
    if user is None or not user.active:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    access_token = create_access_token(data={"sub": user.id})
    logger.info(f"Token refreshed for {user.email}")
    return {"message": "Token refreshed", "data": {"access_token": access_token}}

# -------------------------------
# User Routes
# -------------------------------
@app.get("/users/me", response_model=dict, summary="Current user profile")
def read_profile(current_user: User = Depends(get_current_user)):
    return {"message": "Profile retrieved", "data": current_user.display_details()}

@app.put("/users/me", response_model=dict, summary="Update own profile")
def update_profile(profile: ProfileUpdate, current_user: User = Depends(get_current_user)):
    user = user_manager.update_profile(current_user, profile.name, profile.email, profile.avatar)
    return {"message": "Profile updated", "data": user.display_details()}

@app.get("/users", response_model=dict, summary="List users (admins only)")
def list_users(current_user: User = Depends(get_current_user)):
    users = user_manager.list_users(current_user)
    return {"message": "Users retrieved", "data": [u.display_details() for u in users]}

@app.put("/users/{user_id}/role", response_model=dict, summary="Change a user's role (admins only)")
def set_user_role(user_id: str, body: RoleUpdate, current_user: User = Depends(get_current_user)):
    user = user_manager.set_role(current_user, user_id, body.role)
    return {"message": f"User {user_id} is now {user.role.value}", "data": user.display_details()}

@app.put("/users/{user_id}/active", response_model=dict, summary="Activate or deactivate a user (admins only)")
def set_user_active(user_id: str, body: ActiveUpdate, current_user: User = Depends(get_current_user)):
    user = user_manager.set_active(current_user, user_id, body.active)
    state = "activated" if user.active else "deactivated"
    return {"message": f"User {user_id} {state}", "data": user.display_details()}

# -------------------------------
# Event Routes
# -------------------------------
@app.get("/", response_model=dict, summary="API root endpoint")
def root():
    """Welcome message for the Event Hub API."""
    return {"message": "Welcome to Event Hub API", "data": {}}

@app.post("/events", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a new event")
def create_event(event: EventCreate, current_user: User = Depends(get_current_user)):
    """Create a new event; it stays pending until an admin approves it."""
    evt = event_manager.create_event(current_user, event.model_dump())
    return {"message": "Event created, pending admin approval", "data": evt.display_details()}

@app.get("/events", response_model=dict, summary="List events visible to the caller")
def list_events(current_user: User = Depends(get_current_user)):
    events = event_manager.list_events(current_user)
    return {"message": "Events retrieved", "data": _events(events)}

@app.get("/events/available", response_model=dict, summary="Approved events with free slots")
def list_available_events(current_user: User = Depends(get_current_user)):
    return {"message": "Available events retrieved", "data": _events(event_manager.list_available_events())}

@app.get("/events/mine", response_model=dict, summary="Events created by the caller")
def list_my_events(current_user: User = Depends(get_current_user)):
    return {"message": "Your events retrieved", "data": _events(event_manager.list_my_events(current_user))}

@app.get("/events/joined", response_model=dict, summary="Events the caller has joined")
def list_joined_events(current_user: User = Depends(get_current_user)):
    return {"message": "Joined events retrieved", "data": _events(event_manager.list_joined_events(current_user))}

@app.get("/events/pending", response_model=dict, summary="Events awaiting approval (admins only)")
def list_pending_events(current_user: User = Depends(get_current_user)):
    return {"message": "Pending events retrieved", "data": _events(event_manager.list_pending_events(current_user))}

@app.get("/events/{event_id}", response_model=dict, summary="Get an event")
def get_event(event_id: str, current_user: User = Depends(get_current_user)):
    evt = event_manager.get_event(current_user, event_id)
    return {"message": "Event retrieved", "data": evt.display_details()}

@app.put("/events/{event_id}", response_model=dict, summary="Update an event")
def update_event(event_id: str, event: EventUpdate, current_user: User = Depends(get_current_user)):
    """Update an existing event (creator or admins only)."""
    evt = event_manager.update_event(current_user, event_id, event.model_dump(exclude_unset=True))
    return {"message": f"Event {event_id} updated", "data": evt.display_details()}

@app.delete("/events/{event_id}", response_model=dict, summary="Delete an event")
def delete_event(event_id: str, current_user: User = Depends(get_current_user)):
    """Delete an event (creator or admins only)."""
    event_manager.delete_event(current_user, event_id)
    return {"message": f"Event {event_id} deleted", "data": {}}

@app.put("/events/{event_id}/approve", response_model=dict, summary="Approve an event (admins only)")
def approve_event(event_id: str, current_user: User = Depends(get_current_user)):
    evt = event_manager.approve_event(current_user, event_id)
    return {"message": f"Event {event_id} approved", "data": evt.display_details()}

@app.put("/events/{event_id}/reject", response_model=dict, summary="Reject an event (admins only)")
def reject_event(event_id: str, current_user: User = Depends(get_current_user)):
    evt = event_manager.reject_event(current_user, event_id)
    return {"message": f"Event {event_id} rejected", "data": evt.display_details()}

# -------------------------------
# Enrollment Routes
# -------------------------------
@app.post("/events/{event_id}/join", response_model=dict, summary="Join an event")
def join_event(event_id: str, current_user: User = Depends(get_current_user)):
    evt = enrollment_manager.join_event(current_user, event_id)
    return {"message": f"You joined {evt.title}", "data": evt.display_details()}

@app.post("/events/{event_id}/leave", response_model=dict, summary="Leave an event")
def leave_event(event_id: str, current_user: User = Depends(get_current_user)):
    evt = enrollment_manager.leave_event(current_user, event_id)
    return {"message": f"You left {evt.title}", "data": evt.display_details()}

@app.get("/events/{event_id}/participants/export", response_model=None, summary="Export participants as CSV")
def export_participants(event_id: str, current_user: User = Depends(get_current_user)):
    """Export the participants of an event as a CSV file (creator or admins only)."""
    csv_data = event_manager.export_participants(current_user, event_id)
    return StreamingResponse(csv_data, media_type="text/csv", headers={"Content-Disposition": "attachment; filename=participants.csv"})

# -------------------------------
# Feedback Routes
# -------------------------------
@app.post("/feedback/{event_id}", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Submit feedback for an event")
def submit_feedback(event_id: str, body: FeedbackCreate, current_user: User = Depends(get_current_user)):
    feedback = feedback_manager.submit_feedback(current_user, event_id, body.rating, body.comment)
    return {"message": "Thank you for your feedback", "data": feedback.display_details()}

@app.get("/feedback/{event_id}", response_model=dict, summary="List feedback for an event")
def list_feedback(event_id: str, current_user: User = Depends(get_current_user)):
    items = feedback_manager.list_feedback(current_user, event_id)
    return {
        "message": "Feedback retrieved",
        "data": {"summary": feedback_manager.summarize(items), "items": [f.display_details() for f in items]},
    }

# -------------------------------
# Scheduler Routes
# -------------------------------
@app.get("/scheduler/next", response_model=dict, summary="Get the next scheduled event")
def get_next_event(current_user: User = Depends(get_current_user)):
    """Retrieve the next approved event that has not started yet."""
    for starts_at, event_id in scheduler.upcoming():
        try:
            evt = event_manager.get_event(current_user, event_id)
        except NotFoundError:
            logger.warning(f"Skipping unresolvable scheduled event {event_id}")
            continue
        return {"message": "Next event retrieved", "data": {**evt.display_details(), "starts_at": starts_at.isoformat()}}
    return {"message": "No scheduled events", "data": {}}

@app.get("/scheduler/window", response_model=dict, summary="Scheduled events overlapping a time window")
def get_schedule_window(start: datetime, end: datetime, current_user: User = Depends(get_current_user)):
    event_ids = scheduler.events_between(start, end)
    events = [event_manager.get_event(current_user, event_id) for event_id in event_ids]
    return {"message": "Schedule retrieved", "data": _events(events)}
