from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config
from .errors import NotFoundError


pwd = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.PIN_HASH_ROUNDS)


def hash_pin(pin: str) -> str:
    return pwd.hash(pin)


def verify_pin(pin: str, pin_hash: str) -> bool:
    return pwd.verify(pin, pin_hash)


def create_token(member_id: str) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_MIN)
    return jwt.encode({"sub": member_id, "exp": exp}, config.JWT_SECRET, algorithm=config.ALGO)


def require_family_key(request: Request, key: Optional[str] = Header(default=None, alias="x-family-key")):
    expected = getattr(request.app.state, "family_key", config.FAMILY_API_KEY)
    if not expected:
        return
    if not key:
        raise HTTPException(401, "Missing family key")
    if key != expected:
        raise HTTPException(403, "Invalid family key")


def get_store(request: Request):
    return request.app.state.store


def _member_from_token(store, auth: Optional[str]):
    if not auth or not auth.lower().startswith("bearer "):
        return None
    token = auth.split(" ", 1)[1]
    try:
        member_id = jwt.decode(token, config.JWT_SECRET, algorithms=[config.ALGO])["sub"]
    except (JWTError, KeyError):
        raise HTTPException(401, "Invalid token")
    try:
        return store.get_member(member_id)
    except NotFoundError:
        # token outlived its member
        raise HTTPException(401, "Unknown member")


def get_optional_actor(store=Depends(get_store), auth: Optional[str] = Header(default=None, alias="Authorization")):
    return _member_from_token(store, auth)


def get_actor(actor=Depends(get_optional_actor)):
    if actor is None:
        raise HTTPException(401, "Missing token")
    return actor
