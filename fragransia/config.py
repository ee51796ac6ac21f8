"""
Configuration management for the Fragransia backend.

Settings are read from the environment (a local .env file is loaded first).
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "https://fragransia.in",
    "https://fragransia.onrender.com",
]


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """Runtime settings for the API."""

    environment: str = "development"
    port: int = 5000
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    # Document store
    store_backend: str = "firestore"          # "firestore" or "memory"
    firebase_credentials_json: Optional[str] = None
    firebase_credentials_path: str = "credentials.json"

    # API tokens
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 7 * 24 * 60

    # Razorpay
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_webhook_secret: Optional[str] = None
    currency: str = "INR"

    # Shiprocket
    shiprocket_email: Optional[str] = None
    shiprocket_password: Optional[str] = None
    shiprocket_pickup_pincode: str = "110001"
    shiprocket_pickup_location: str = "Primary"

    # Notifications
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    admin_email: Optional[str] = None
    whatsapp_token: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_verify_token: Optional[str] = None

    # Webhooks / abuse protection
    webhook_api_key: Optional[str] = None
    sensitive_rate_limit: int = 5
    sensitive_rate_window: int = 15 * 60
    trusted_proxies: List[str] = field(default_factory=list)

    # Bootstrap admin account
    seed_admin_email: Optional[str] = None
    seed_admin_password: Optional[str] = None

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            environment=os.getenv("ENVIRONMENT", os.getenv("NODE_ENV", "development")),
            port=int(os.getenv("PORT", "5000")),
            cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
            store_backend=os.getenv("STORE_BACKEND", "firestore").lower(),
            firebase_credentials_json=os.getenv("FIREBASE_CREDENTIALS_JSON"),
            firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS", "credentials.json"),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", "change-me"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60))),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET"),
            currency=os.getenv("CURRENCY", "INR"),
            shiprocket_email=os.getenv("SHIPROCKET_EMAIL"),
            shiprocket_password=os.getenv("SHIPROCKET_PASSWORD"),
            shiprocket_pickup_pincode=os.getenv("SHIPROCKET_PICKUP_PINCODE", "110001"),
            shiprocket_pickup_location=os.getenv("SHIPROCKET_PICKUP_LOCATION", "Primary"),
            smtp_server=os.getenv("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            email_from=os.getenv("EMAIL_FROM") or os.getenv("SMTP_USER"),
            admin_email=os.getenv("ADMIN_EMAIL"),
            whatsapp_token=os.getenv("WHATSAPP_TOKEN"),
            whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID"),
            whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN"),
            webhook_api_key=os.getenv("WEBHOOK_API_KEY"),
            sensitive_rate_limit=int(os.getenv("SENSITIVE_RATE_LIMIT", "5")),
            sensitive_rate_window=int(os.getenv("SENSITIVE_RATE_WINDOW", str(15 * 60))),
            trusted_proxies=_env_list("TRUSTED_PROXIES", []),
            seed_admin_email=os.getenv("SEED_ADMIN_EMAIL"),
            seed_admin_password=os.getenv("SEED_ADMIN_PASSWORD"),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
