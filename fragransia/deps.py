"""FastAPI dependencies wiring settings, store and third-party clients to the app."""
import threading

from fastapi import Request

from .config import Settings
from .notifications import Notifier
from .payments import RazorpayGateway
from .shipping import ShiprocketClient
from .store import DocumentStore, build_store

_store_lock = threading.Lock()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> DocumentStore:
    state = request.app.state
    if state.store is None:
        with _store_lock:
            if state.store is None:
                state.store = build_store(state.settings)
    return state.store


def get_payment_gateway(request: Request) -> RazorpayGateway:
    state = request.app.state
    if getattr(state, "payment_gateway", None) is None:
        settings: Settings = state.settings
        state.payment_gateway = RazorpayGateway(settings.razorpay_key_id, settings.razorpay_key_secret)
    return state.payment_gateway


def get_shipping_client(request: Request) -> ShiprocketClient:
    state = request.app.state
    if getattr(state, "shipping_client", None) is None:
        settings: Settings = state.settings
        state.shipping_client = ShiprocketClient(
            settings.shiprocket_email,
            settings.shiprocket_password,
            pickup_pincode=settings.shiprocket_pickup_pincode,
        )
    return state.shipping_client


def get_notifier(request: Request) -> Notifier:
    state = request.app.state
    if getattr(state, "notifier", None) is None:
        state.notifier = Notifier(state.settings)
    return state.notifier

