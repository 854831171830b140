import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from osnovci.core.errors import AuthenticationError, AuthorizationError
from osnovci.core.permissions import normalize_role
from osnovci.db.models.user import User
from osnovci.db.session import get_db

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# Unambiguous upper-case alphabet for codes people read off a screen or an email.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def _get_secret_key() -> str:
    secret = os.getenv("SECRET_KEY")
    if not secret:
        raise RuntimeError("SECRET_KEY is not set")
    return secret


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        return False


def create_access_token(payload: dict) -> str:
    to_encode = payload.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, _get_secret_key(), algorithm=ALGORITHM)


def access_token_for(user: User) -> str:
    return create_access_token(
        {"sub": user.email, "uid": user.id, "role": user.role, "tv": int(user.token_version or 0)}
    )


def generate_code(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def hash_code(code: str) -> str:
    secret = _get_secret_key()
    return hashlib.sha256(f"{code.strip().upper()}:{secret}".encode("utf-8")).hexdigest()


def verify_code(code: str, code_hash: str | None) -> bool:
    if not code_hash:
        return False
    return hmac.compare_digest(hash_code(code), code_hash)


@dataclass(frozen=True)
class SessionContext:
    user_id: int
    role: str
    email: str


def get_current_user(
    token: str | None = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    if not token:
        raise AuthenticationError()
    try:
        payload = jwt.decode(token, _get_secret_key(), algorithms=[ALGORITHM])
    except JWTError as exc:
        raise AuthenticationError("Could not validate credentials") from exc

    user_id = payload.get("uid")
    token_version = payload.get("tv")
    if not isinstance(user_id, int) or token_version is None:
        raise AuthenticationError("Could not validate credentials")

    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise AuthenticationError("Could not validate credentials")
    if int(token_version) != int(user.token_version or 0):
        raise AuthenticationError("Could not validate credentials")
    return user


def get_session_context(current_user: User = Depends(get_current_user)) -> SessionContext:
    return SessionContext(user_id=current_user.id, role=normalize_role(current_user.role), email=current_user.email)


def require_role(*roles: str):
    allowed = {normalize_role(r) for r in roles}

    def _dependency(current_user: User = Depends(get_current_user)) -> User:
        if normalize_role(current_user.role) not in allowed:
            raise AuthorizationError()
        return current_user

    return _dependency
