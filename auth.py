import re
import time
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import bcrypt
import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import Settings
from database import Database
from errors import AuthenticationError, AuthorizationError, RateLimited, ValidationError
from schemas import RegisterIn, Role, User

log = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role


# ---------- Passwords ----------

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def validate_password(password: str) -> List[str]:
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if len(password.encode("utf-8")) > 72:
        errors.append("Password must be at most 72 bytes long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must include at least one uppercase letter (A-Z)")
    if not re.search(r"[a-z]", password):
        errors.append("Password must include at least one lowercase letter (a-z)")
    if not re.search(r"[0-9]", password):
        errors.append("Password must include at least one number (0-9)")
    if not SPECIAL_CHARS.search(password):
        errors.append("Password must include at least one special character (e.g., !@#$%^&*)")
    return errors


def validate_username(username: str) -> List[str]:
    if not username or not username.strip():
        return ["Username is required"]
    if not username.isascii() or not username.isalnum():
        return ["Username must be alphanumeric (letters and numbers only, no special characters or spaces)"]
    return []


# ---------- Tokens ----------

def create_access_token(user: User, secret: str, expires_minutes: int) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user.id,
        "role": user.role.value,
        "username": user.username,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, secret: str) -> Principal:
    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], options={"require": ["exp", "sub"]})
        return Principal(id=claims["sub"], role=Role(claims.get("role", Role.USER.value)))
    except (jwt.InvalidTokenError, ValueError) as e:
        raise AuthenticationError(errors=["Invalid or expired authentication token"]) from e


def get_current_user(request: Request,
                     credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Principal:
    if credentials is None:
        raise AuthenticationError(errors=["Authentication token is required"])
    return decode_access_token(credentials.credentials, request.app.state.settings.jwt_secret)


def require_admin(user: Principal = Depends(get_current_user)) -> Principal:
    if user.role != Role.ADMIN:
        raise AuthorizationError(errors=["Admin role required to access this resource"])
    return user


# ---------- Rate limiting ----------

class RateLimiter:
    """Fixed-window request counter keyed by client address."""

    def __init__(self, limit: int, window_seconds: float, clock=time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str) -> bool:
        """Count one request for `key`; False once the window's limit is spent."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
        return count <= self.limit


def limit_auth_attempts(request: Request) -> None:
    limiter: RateLimiter = request.app.state.auth_limiter
    key = request.client.host if request.client else "unknown"
    if not limiter.hit(key):
        log.warning("Auth rate limit exceeded for %s", key)
        raise RateLimited(errors=["Too many login/register attempts from this IP, please try again later"])


# ---------- Accounts ----------

def register_user(db: Database, data: RegisterIn, role: Role = Role.USER) -> User:
    errors = validate_username(data.username) + validate_password(data.password)
    if errors:
        raise ValidationError("Registration failed", errors)
    return db.users.create(
        username=data.username.strip(),
        email=str(data.email),
        password_hash=hash_password(data.password),
        role=role,
        first_name=data.first_name,
        last_name=data.last_name,
    )


def authenticate(db: Database, email: str, password: str) -> User:
    user = db.users.find_by_email(email)
    if user is None or not verify_password(password, user.password_hash):
        raise AuthenticationError("Login failed", ["Invalid email or password"])
    return user


def ensure_admin(db: Database, settings: Settings) -> Optional[User]:
    """Create or promote the configured admin account, if one is configured."""
    if not (settings.admin_email and settings.admin_password):
        return None
    user = db.users.find_by_email(settings.admin_email)
    if user is None:
        user = register_user(db, RegisterIn(
            username=settings.admin_username,
            email=settings.admin_email,
            password=settings.admin_password,
        ), role=Role.ADMIN)
        log.info("Seeded admin account %s", user.email)
    elif user.role != Role.ADMIN:
        db.users.set_role(user.id, Role.ADMIN)
        user = user.model_copy(update={"role": Role.ADMIN})
        log.info("Promoted %s to admin", user.email)
    return user
