from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from datetime import datetime, timedelta, UTC

from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ALGORITHM,
    DATABASE_PATH,
    REFRESH_TOKEN_EXPIRE_DAYS,
    SECRET_KEY,
)
from database import Database
from manager import UserManager
from models import User

db = Database(DATABASE_PATH)
user_manager = UserManager(db)

# OAuth2 scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login")

class TokenData(BaseModel):
    user_id: str
    type: str

def _create_token(data: dict, token_type: str, expires_delta: timedelta):
    to_encode = data.copy()
    expire = datetime.now(UTC) + expires_delta
    to_encode.update({"exp": expire, "type": token_type})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def create_access_token(data: dict):
    """Create a JWT access token."""
    return _create_token(data, "access", timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

def create_refresh_token(data: dict):
    """Create a JWT refresh token."""
    return _create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

def decode_token(token: str, expected_type: str) -> TokenData:
    """Decode a token and check its type; raises HTTPException(401) otherwise."""
    credentials_exception = HTTPException(
        status_code=401,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if user_id is None or payload.get("type") != expected_type:
        raise credentials_exception
    return TokenData(user_id=user_id, type=expected_type)

async def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    """Resolve the bearer token into the calling user."""
    token_data = decode_token(token, "access")
    user = user_manager.get_user(token_data.user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.active:
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user
