import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.user import User

SECRET_KEY = os.getenv("SECRET_KEY")

if not SECRET_KEY:
    raise RuntimeError("SECRET_KEY not set in environment")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

security = HTTPBearer()
security_optional = HTTPBearer(auto_error=False)


# ---------------- TOKEN ----------------
def create_access_token(subject: str, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES):
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


# ---------------- AUTH DEPENDENCY ----------------
def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
):
    return _resolve_token_user(token=credentials.credentials, db=db)


def get_stream_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_optional),
    token: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """
    Browser EventSource cannot set headers, so streaming endpoints also
    accept the token as a ?token= query parameter.
    """
    raw_token = credentials.credentials if credentials is not None else token
    if not raw_token:
        raise HTTPException(status_code=401, detail="Invalid token")
    return _resolve_token_user(token=raw_token, db=db)


def _resolve_token_user(token: str, db: Session) -> User:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    iat = payload.get("iat")

    if not user_id or not iat:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(User).filter(User.id == str(user_id)).first()
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")

    if user.password_changed_at:
        issued_at = datetime.fromtimestamp(iat, tz=timezone.utc)
        pwd_changed = user.password_changed_at.replace(tzinfo=timezone.utc)
        if issued_at < pwd_changed:
            raise HTTPException(status_code=401, detail="Session expired")

    return user
