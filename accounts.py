import hashlib
import logging
from typing import Optional

from database import ChatStore
from errors import AuthorizationError, ValidationError
from schemas import User

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def register(store: ChatStore, name: Optional[str], password: str) -> User:
    name = (name or "").strip()
    if not name:
        raise ValidationError("A name is required to register", code="missing_name")
    if not password:
        raise ValidationError("A password is required", code="missing_password")
    user = store.create_user(name, hash_password(password))
    logger.info("Registered user %s", user.id)
    return user


def login(store: ChatStore, user_id: str, password: str) -> User:
    user = store.get_user(user_id)
    if user is None or user.password_hash != hash_password(password):
        raise AuthorizationError("Invalid credentials", code="invalid_credentials", status_code=401)
    return user
