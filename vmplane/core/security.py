import base64
import hashlib
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from .config import settings
from .exceptions import AuthRequired, Internal


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


class TokenClaims(BaseModel):
    userId: int
    username: str
    email: str
    jti: str
    exp: int


class TokenDenyList:
    """
    Revoked token ids, kept only until the token would have expired anyway.
    Shared by every request of the process.
    """

    def __init__(self):
        self._entries: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float):
        expired = [jti for jti, exp in self._entries.items() if exp <= now]
        for jti in expired:
            del self._entries[jti]

    def revoke(self, jti: str, exp: int):
        with self._lock:
            now = time.time()
            self._purge(now)
            if exp > now:
                self._entries[jti] = exp

    def is_revoked(self, jti: str) -> bool:
        with self._lock:
            self._purge(time.time())
            return jti in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)


def create_access_token(user_id: int, username: str, email: str, secret: Optional[str] = None,
                        expires_minutes: Optional[int] = None) -> str:
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "userId": user_id,
        "username": username,
        "email": email,
        "jti": uuid.uuid4().hex,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    return jwt.encode(payload, secret or settings.JWT_SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str, deny_list: Optional[TokenDenyList] = None,
                        secret: Optional[str] = None) -> TokenClaims:
    try:
        payload = jwt.decode(token, secret or settings.JWT_SECRET_KEY, algorithms=[settings.ALGORITHM])
        claims = TokenClaims.model_validate(payload)
    except (JWTError, ValidationError):
        raise AuthRequired("Could not validate credentials")

    if deny_list is not None and deny_list.is_revoked(claims.jti):
        raise AuthRequired("Token has been revoked")
    return claims


class KeyVault:
    """Symmetric encryption for guest private keys, keyed by the process-wide secret."""

    def __init__(self, secret: str):
        if not secret:
            raise Internal("Key encryption secret is not configured")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, data: bytes) -> str:
        return self._fernet.encrypt(data).decode("ascii")

    def decrypt(self, token: str) -> bytes:
        try:
            return self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken:
            raise Internal("Stored key material cannot be decrypted with the configured secret")
