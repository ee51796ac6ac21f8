"""
Shiprocket REST client.

Calls go through httpx.AsyncClient; the auth token is cached on the client
and refreshed once when the API answers 401.
"""
from typing import Any, Dict, List, Optional

import httpx

from .config import Settings
from .logger import get_logger

logger = get_logger("shipping")

SHIPROCKET_BASE_URL = "https://apiv2.shiprocket.in/v1/external"
SHIPROCKET_TIMEOUT = 30.0


class ShippingError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ShiprocketClient:
    def __init__(
        self,
        email: Optional[str],
        password: Optional[str],
        pickup_pincode: str = "110001",
        base_url: str = SHIPROCKET_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = SHIPROCKET_TIMEOUT,
    ):
        self.email = email
        self.password = password
        self.pickup_pincode = pickup_pincode
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._token: Optional[str] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def authenticate(self) -> str:
        if not self.email or not self.password:
            raise ShippingError("Shiprocket credentials are not configured")
        try:
            async with self._client() as client:
                resp = await client.post("/auth/login", json={"email": self.email, "password": self.password})
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Shiprocket authentication failed: HTTP %s", e.response.status_code)
            raise ShippingError("Shiprocket authentication failed", e.response.status_code)
        except httpx.RequestError as e:
            logger.error("Shiprocket authentication request failed: %s", e)
            raise ShippingError(f"Shiprocket unreachable: {e}")
        token = resp.json().get("token")
        if not token:
            raise ShippingError("Shiprocket authentication returned no token")
        self._token = token
        return token

    async def _request(
        self,
        method: str,
        path: str,
        failure: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        for attempt in range(2):
            token = self._token or await self.authenticate()
            try:
                async with self._client() as client:
                    resp = await client.request(
                        method,
                        path,
                        params=params,
                        json=json,
                        headers={"Authorization": f"Bearer {token}"},
                    )
            except httpx.RequestError as e:
                logger.error("Shiprocket %s %s failed: %s", method, path, e)
                raise ShippingError(f"Shiprocket unreachable: {e}")
            if resp.status_code == 401 and attempt == 0:
                # cached token expired
                self._token = None
                continue
            try:
                resp.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.warning("Shiprocket %s %s HTTP %s body=%s", method, path, resp.status_code, resp.text[:500])
                raise ShippingError(failure, e.response.status_code)
            return resp.json()
        raise ShippingError(failure, 401)

    # -------------------------------
    # Rates / serviceability
    # -------------------------------
    async def get_rates(
        self,
        delivery_pincode: str,
        weight: float = 1.0,
        cod: bool = False,
        pickup_pincode: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            "/courier/serviceability/",
            "Failed to get shipping rates",
            params={
                "pickup_postcode": pickup_pincode or self.pickup_pincode,
                "delivery_postcode": delivery_pincode,
                "weight": weight,
                "cod": 1 if cod else 0,
            },
        )
        return (data.get("data") or {}).get("available_courier_companies") or []

    async def check_serviceability(self, pincode: str, weight: float = 1.0, cod: bool = False) -> bool:
        try:
            return len(await self.get_rates(pincode, weight, cod)) > 0
        except ShippingError as e:
            logger.warning("Serviceability check for %s failed: %s", pincode, e.message)
            return False

    # -------------------------------
    # Shipments
    # -------------------------------
    async def create_shipment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("POST", "/orders/create/adhoc", "Failed to create shipment", json=payload)
        logger.info("Shipment created for order %s: shipment %s", payload.get("order_id"), data.get("shipment_id"))
        return data

    async def track_shipment(self, awb_code: str) -> Dict[str, Any]:
        return await self._request("GET", f"/courier/track/awb/{awb_code}", "Failed to track shipment")

    async def cancel_shipment(self, awb_code: str) -> Dict[str, Any]:
        data = await self._request(
            "POST", "/orders/cancel/shipment/awbs", "Failed to cancel shipment", json={"awbs": [awb_code]},
        )
        logger.info("Shipment %s cancelled", awb_code)
        return data

    async def generate_label(self, shipment_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/courier/generate/label", "Failed to generate label", json={"shipment_id": [shipment_id]},
        )

    async def get_pickup_locations(self) -> Dict[str, Any]:
        return await self._request("GET", "/settings/company/pickup", "Failed to get pickup locations")


def _address_fields(prefix: str, address: Dict[str, Any], order: Dict[str, Any]) -> Dict[str, Any]:
    first, _, last = (address.get("name") or "").partition(" ")
    return {
        f"{prefix}_customer_name": first,
        f"{prefix}_last_name": last,
        f"{prefix}_address": address.get("address1", ""),
        f"{prefix}_address_2": address.get("address2", ""),
        f"{prefix}_city": address.get("city", ""),
        f"{prefix}_pincode": address.get("pincode", ""),
        f"{prefix}_state": address.get("state", ""),
        f"{prefix}_country": address.get("country", "India"),
        f"{prefix}_email": order.get("email", ""),
        f"{prefix}_phone": address.get("phone", ""),
    }


def build_shipment_payload(
    order: Dict[str, Any],
    settings: Settings,
    length: float = 10,
    breadth: float = 10,
    height: float = 10,
    weight: Optional[float] = None,
) -> Dict[str, Any]:
    """Shiprocket adhoc-order body for a stored order."""
    address = order.get("shippingAddress") or {}
    billing = order.get("billingAddress") or address
    summary = order.get("orderSummary") or {}
    items = order.get("items") or []
    created_at = order.get("createdAt")
    order_date = created_at.strftime("%Y-%m-%d %H:%M") if hasattr(created_at, "strftime") else str(created_at or "")
    if weight is None:
        weight = sum(float(i.get("weight") or 0.5) * int(i.get("quantity", 1)) for i in items) or 0.5

    payload = {
        "order_id": order.get("orderNumber") or order.get("id"),
        "order_date": order_date,
        "pickup_location": settings.shiprocket_pickup_location,
        **_address_fields("billing", billing, order),
        "shipping_is_billing": billing == address,
        "order_items": [
            {
                "name": i.get("name"),
                "sku": i.get("sku") or i.get("productId"),
                "units": int(i.get("quantity", 1)),
                "selling_price": float(i.get("price", 0)),
            }
            for i in items
        ],
        "payment_method": "COD" if order.get("paymentMethod") == "cod" else "Prepaid",
        "giftwrap_charges": float(summary.get("giftWrapCharge", 0)),
        "sub_total": float(summary.get("finalTotal", 0)),
        "length": length,
        "breadth": breadth,
        "height": height,
        "weight": weight,
    }
    if billing != address:
        payload.update(_address_fields("shipping", address, order))
    return payload
