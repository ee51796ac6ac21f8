import uuid
from typing import Any, Callable, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from ..config import Settings
from ..deps import get_app_settings, get_store
from ..logger import get_logger
from ..schemas import SessionRequest, UserLogin, UserRegister
from ..security import (
    USERS,
    get_current_user,
    get_identity_verifier,
    hash_password,
    issue_token,
    public_user,
    sensitive_operation_limit,
    verify_password,
)
from ..store import DocumentStore, utcnow

logger = get_logger("routes.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _new_profile(uid: str, email: str, first_name: str = "", last_name: str = "", phone: str = "") -> Dict[str, Any]:
    now = utcnow()
    return {
        "uid": uid,
        "email": email,
        "firstName": first_name,
        "lastName": last_name,
        "phoneNumber": phone or "",
        "role": "customer",
        "isActive": True,
        "emailVerified": False,
        "addresses": [],
        "wishlist": [],
        "preferences": {"newsletter": True, "notifications": True, "whatsappUpdates": False},
        "createdAt": now,
        "lastLogin": now,
    }


def _auth_response(user: Dict[str, Any], settings: Settings, message: str) -> Dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "access_token": issue_token(user, settings),
        "token_type": "bearer",
        "user": public_user(user),
    }


@router.post("/register", status_code=201, dependencies=[Depends(sensitive_operation_limit("auth"))])
async def register(
    user_data: UserRegister,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    email = user_data.email.lower()
    if store.query(USERS, {"email": email}, limit=1):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    uid = uuid.uuid4().hex
    user = _new_profile(uid, email, user_data.first_name, user_data.last_name, user_data.phone_number)
    user["passwordHash"] = hash_password(user_data.password)
    store.create(USERS, user, doc_id=uid)
    logger.info("User registered: %s", uid)
    return _auth_response(user, settings, "Registration successful")


@router.post("/login", dependencies=[Depends(sensitive_operation_limit("auth"))])
async def login(
    user_data: UserLogin,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    match = store.query(USERS, {"email": user_data.email.lower()}, limit=1)
    if not match or not verify_password(user_data.password, match[0].get("passwordHash")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    user = match[0]
    if user.get("isActive") is False:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account has been deactivated. Please contact support.",
        )
    store.update(USERS, user["id"], {"lastLogin": utcnow()})
    return _auth_response(user, settings, "Login successful")


@router.post("/session", dependencies=[Depends(sensitive_operation_limit("auth"))])
async def create_session(
    body: SessionRequest,
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
    verify_id_token: Callable[[str], Dict[str, Any]] = Depends(get_identity_verifier),
):
    """Exchange a Firebase ID token for an API token, creating the profile on first sign-in."""
    identity = verify_id_token(body.id_token)
    uid = identity["uid"]
    user = store.get(USERS, uid)
    if user is None:
        user = _new_profile(uid, (identity.get("email") or "").lower())
        user["emailVerified"] = identity.get("email_verified", False)
        store.create(USERS, user, doc_id=uid)
        logger.info("Profile created for identity %s", uid)
    elif user.get("isActive") is False:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account has been deactivated. Please contact support.",
        )
    else:
        store.update(USERS, uid, {"lastLogin": utcnow(), "emailVerified": identity.get("email_verified", False)})
    return _auth_response(user, settings, "Session created")


@router.get("/verify")
async def verify(current_user: dict = Depends(get_current_user)):
    return {"success": True, "valid": True, "user": public_user(current_user)}


@router.post("/logout")
async def logout(current_user: dict = Depends(get_current_user)):
    # API tokens are stateless; the client discards its copy
    logger.info("User logged out: %s", current_user["uid"])
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me")
async def get_me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "user": public_user(current_user)}
