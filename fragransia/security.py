"""
Authentication, authorization and abuse protection.

Resource routes accept one kind of bearer token: an HS256 API token issued
by this backend, either after a password login or in exchange for a Firebase
ID token verified with the Admin SDK.
"""
import hashlib
import hmac
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Sequence

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth

from .config import Settings
from .deps import get_app_settings, get_store
from .logger import get_logger
from .store import DocumentStore, Transaction, init_firebase, to_datetime, utcnow

logger = get_logger("security")

USERS = "users"
RATE_LIMITS = "rateLimits"

PBKDF2_ITERATIONS = 260000

security = HTTPBearer(auto_error=False)


# -------------------------------
# Passwords
# -------------------------------
def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    try:
        algorithm, iterations, salt, digest = (stored or "").split("$")
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations)).hex()
    return hmac.compare_digest(candidate, digest)


# -------------------------------
# API tokens (JWT)
# -------------------------------
def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Dict[str, Any]:
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


def issue_token(user: Dict[str, Any], settings: Settings) -> str:
    return create_access_token(
        {"uid": user["uid"], "email": user.get("email"), "role": user.get("role", "customer")},
        settings,
    )


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "uid": user.get("uid") or user.get("id"),
        "email": user.get("email"),
        "firstName": user.get("firstName"),
        "lastName": user.get("lastName"),
        "phoneNumber": user.get("phoneNumber"),
        "role": user.get("role", "customer"),
        "emailVerified": bool(user.get("emailVerified", False)),
    }


# -------------------------------
# Identity provider (Firebase Auth)
# -------------------------------
def verify_firebase_token(id_token: str) -> Dict[str, Any]:
    """Verify a Firebase ID token; Firebase auth errors propagate to the error handlers."""
    decoded = firebase_auth.verify_id_token(id_token, check_revoked=True)
    return {
        "uid": decoded["uid"],
        "email": decoded.get("email"),
        "email_verified": bool(decoded.get("email_verified", False)),
    }


def get_identity_verifier(settings: Settings = Depends(get_app_settings)) -> Callable[[str], Dict[str, Any]]:
    init_firebase(settings)
    return verify_firebase_token


# -------------------------------
# Request dependencies
# -------------------------------
def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _resolve_user(token: str, store: DocumentStore, settings: Settings) -> Dict[str, Any]:
    try:
        payload = decode_access_token(token, settings)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired. Please login again.")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid or expired token.")

    uid = payload.get("uid")
    if not uid:
        raise _unauthorized("Invalid or expired token.")
    user = store.get(USERS, uid)
    if user is None:
        raise _unauthorized("User not found in database.")
    if user.get("isActive") is False:
        raise _unauthorized("Account has been deactivated. Please contact support.")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Access denied. No token provided or invalid format.")
    return _resolve_user(credentials.credentials, store, settings)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> Optional[Dict[str, Any]]:
    if credentials is None or not credentials.credentials:
        return None
    try:
        return _resolve_user(credentials.credentials, store, settings)
    except HTTPException:
        return None


async def get_admin_user(current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required.")
    return current_user


async def get_staff_user(current_user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") not in ("admin", "staff"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff access required.")
    return current_user


def ensure_owner(user: Dict[str, Any], resource_user_id: Optional[str]) -> None:
    if user.get("role") in ("admin", "staff"):
        return
    if resource_user_id != user.get("uid"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. You can only access your own resources.",
        )


async def require_webhook_key(request: Request, settings: Settings = Depends(get_app_settings)) -> None:
    api_key = request.headers.get("x-api-key") or request.query_params.get("apiKey")
    if not settings.webhook_api_key or not api_key or not hmac.compare_digest(api_key, settings.webhook_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key.")


# -------------------------------
# Rate limiting (shared store)
# -------------------------------
class RateLimitExceeded(Exception):
    def __init__(self, retry_after: int):
        super().__init__("Too many attempts. Please try again later.")
        self.retry_after = retry_after


class RateLimiter:
    """Fixed-window attempt counter kept in the document store, so every instance shares it."""

    # expired windows removed per pruning pass
    prune_batch = 50

    def __init__(self, store: DocumentStore, max_attempts: int = 5, window_seconds: int = 15 * 60):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    def hit(self, scope: str, key: str, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        doc_id = f"{scope}:{key}"
        window = timedelta(seconds=self.window_seconds)

        def _hit(txn: Transaction) -> int:
            doc = txn.get(RATE_LIMITS, doc_id)
            expires_at = to_datetime(doc.get("expiresAt")) if doc else None
            if doc is None or expires_at is None or now >= expires_at:
                txn.set(RATE_LIMITS, doc_id, {
                    "scope": scope,
                    "key": key,
                    "count": 1,
                    "windowStart": now,
                    "expiresAt": now + window,
                })
                return 1
            count = int(doc.get("count", 0))
            if count >= self.max_attempts:
                raise RateLimitExceeded(max(1, math.ceil((expires_at - now).total_seconds())))
            txn.update(RATE_LIMITS, doc_id, {"count": count + 1})
            return count + 1

        count = self.store.run_transaction(_hit)
        if count == 1:
            self.prune(now)
        return count

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete windows that have already expired."""
        return self.store.delete_expired(RATE_LIMITS, "expiresAt", now or utcnow(), self.prune_batch)


def client_ip(request: Request, trusted_proxies: Sequence[str] = ()) -> str:
    """Peer address, or the nearest untrusted X-Forwarded-For hop when the peer is a trusted proxy."""
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in trusted_proxies:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer


def sensitive_operation_limit(scope: str):
    """Dependency factory limiting attempts per client IP (and user, when signed in)."""
    async def _limit(
        request: Request,
        store: DocumentStore = Depends(get_store),
        settings: Settings = Depends(get_app_settings),
        user: Optional[dict] = Depends(get_optional_user),
    ) -> None:
        key = client_ip(request, settings.trusted_proxies)
        if user:
            key = f"{key}:{user.get('uid')}"
        limiter = RateLimiter(store, settings.sensitive_rate_limit, settings.sensitive_rate_window)
        limiter.hit(scope, key)
    return _limit
