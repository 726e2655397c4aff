"""
Expert Evaluator - Authentication
Email/password accounts with werkzeug password hashes and HS256 bearer tokens.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import List, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from backend.database import Profile, get_db

logger = logging.getLogger(__name__)

JWT_SECRET        = os.getenv("JWT_SECRET", "expert-evaluator-dev-secret-change-me-in-production")
JWT_ALGORITHM     = "HS256"
JWT_EXP_HOURS     = int(os.getenv("JWT_EXP_HOURS", "12"))
MIN_PASSWORD_LEN  = 6


class AuthError(ValueError):
    pass


class DuplicateAccount(AuthError):
    pass


def _normalise_email(email: str) -> str:
    return (email or "").strip().lower()


def sign_up(db: Session, email: str, password: str, username: str,
            face_embedding: Optional[List[float]] = None) -> Profile:
    email = _normalise_email(email)
    username = (username or "").strip()

    if "@" not in email:
        raise AuthError("A valid email address is required")
    if not username:
        raise AuthError("Username is required")
    if len(password or "") < MIN_PASSWORD_LEN:
        raise AuthError(f"Password must be at least {MIN_PASSWORD_LEN} characters")

    if db.query(Profile).filter(Profile.email == email).first():
        raise DuplicateAccount("An account with this email already exists")
    if db.query(Profile).filter(Profile.username == username).first():
        raise DuplicateAccount("This username is already taken")

    profile = Profile(
        email=email,
        username=username,
        password_hash=generate_password_hash(password),
        face_embedding=face_embedding,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info("New account created: %s", profile.id)
    return profile


def sign_in(db: Session, email: str, password: str) -> Profile:
    profile = db.query(Profile).filter(Profile.email == _normalise_email(email)).first()
    if profile is None or not check_password_hash(profile.password_hash, password or ""):
        raise AuthError("Invalid email or password")
    return profile


def issue_token(profile: Profile) -> str:
    payload = {
        "sub": profile.id,
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + timedelta(hours=JWT_EXP_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> str:
    """Return the user id carried by `token`."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthError("Invalid token") from e
    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token")
    return user_id


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Profile:
    """FastAPI dependency: the Profile behind `Authorization: Bearer <token>`."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    try:
        user_id = decode_token(authorization.split(" ", 1)[1].strip())
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))

    profile = db.get(Profile, user_id)
    if profile is None:
        raise HTTPException(status_code=401, detail="Account no longer exists")
    return profile
