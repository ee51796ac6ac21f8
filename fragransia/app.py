"""
FastAPI application factory.

`app` is built at import time for uvicorn; the document store is created
lazily on the first request, so importing this module needs no credentials.
"""
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import Settings, get_settings
from .errors import register_error_handlers
from .logger import get_logger
from .routes import ROUTERS
from .security import USERS, hash_password
from .store import DocumentStore, build_store, utcnow

logger = get_logger("app")


# -------------------------------
# Seed data
# -------------------------------
def seed_admin_user(store: DocumentStore, settings: Settings) -> None:
    if not settings.seed_admin_email or not settings.seed_admin_password:
        return
    email = settings.seed_admin_email.lower()
    if store.query(USERS, {"email": email}, limit=1):
        return
    uid = uuid.uuid4().hex
    now = utcnow()
    store.create(USERS, {
        "uid": uid,
        "email": email,
        "firstName": "Admin",
        "lastName": "",
        "phoneNumber": "",
        "role": "admin",
        "isActive": True,
        "emailVerified": True,
        "passwordHash": hash_password(settings.seed_admin_password),
        "addresses": [],
        "wishlist": [],
        "preferences": {},
        "createdAt": now,
        "lastLogin": None,
    }, doc_id=uid)
    logger.info("Seeded admin user %s", email)


def create_app(settings: Optional[Settings] = None, store: Optional[DocumentStore] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.seed_admin_email:
            if app.state.store is None:
                app.state.store = build_store(settings)
            seed_admin_user(app.state.store, settings)
        logger.info("Fragransia API started (%s)", settings.environment)
        yield

    app = FastAPI(
        title="Fragransia API",
        description="Storefront backend for Fragransia: catalog, orders, coupons, payments and shipping",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    for router in ROUTERS:
        app.include_router(router)

    @app.get("/api/health")
    async def health():
        return {
            "status": "OK",
            "timestamp": utcnow().isoformat(),
            "environment": settings.environment,
            "version": __version__,
        }

    @app.get("/api")
    async def api_index():
        return {
            "message": "Fragransia API",
            "version": __version__,
            "endpoints": sorted({r.prefix for r in ROUTERS}),
        }

    return app


app = create_app()
