"""
Stripe helpers

Thin wrapper over the Stripe SDK: building hosted checkout sessions,
verifying webhook payloads and reading back a session's line items.
Amounts cross this boundary as floats in major units; Stripe sees
integer minor units.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

import stripe

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
SHIPPING_COUNTRIES = [c.strip() for c in os.getenv("SHIPPING_COUNTRIES", "US,CA,GB").split(",") if c.strip()]

CHECKOUT_COMPLETED = "checkout.session.completed"


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def from_minor_units(amount: Optional[int]) -> float:
    return round((amount or 0) / 100, 2)


def build_line_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One Stripe line item per cart item.

    product_id/size/color ride along as product metadata so the webhook can
    rebuild the order. Stripe metadata only holds strings.
    """
    line_items = []
    for item in items:
        product_data: Dict[str, Any] = {
            "name": item["name"],
            "metadata": {
                "product_id": str(item["product_id"]),
                "size": item.get("size") or "",
                "color": item.get("color") or "",
            },
        }
        if item.get("image"):
            product_data["images"] = [item["image"]]
        line_items.append({
            "price_data": {
                "currency": CURRENCY,
                "product_data": product_data,
                "unit_amount": to_minor_units(item["price"]),
            },
            "quantity": int(item["quantity"]),
        })
    return line_items


def create_checkout_session(items: List[Dict[str, Any]], user_id: str, customer_email: Optional[str] = None) -> Dict[str, str]:
    params: Dict[str, Any] = {
        "mode": "payment",
        "line_items": build_line_items(items),
        "client_reference_id": user_id,
        "metadata": {"user_id": user_id},
        "success_url": f"{FRONTEND_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{FRONTEND_URL}/cart",
    }
    if SHIPPING_COUNTRIES:
        params["shipping_address_collection"] = {"allowed_countries": SHIPPING_COUNTRIES}
    if customer_email:
        params["customer_email"] = customer_email
    session = stripe.checkout.Session.create(**params)
    logger.info("Created checkout session %s for user %s", session.id, user_id)
    return {"id": session.id, "url": session.url}


def construct_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe-Signature header and return the event as a plain dict.

    Raises stripe.SignatureVerificationError or ValueError.
    """
    stripe.Webhook.construct_event(payload, sig_header or "", STRIPE_WEBHOOK_SECRET)
    return json.loads(payload)


def _meta(metadata: Any, key: str) -> Optional[str]:
    if metadata is None:
        return None
    value = getattr(metadata, key, None)
    return value or None


def fetch_line_items(session_id: str) -> List[Dict[str, Any]]:
    """Line items Stripe recorded for a session, as order item dicts."""
    result = stripe.checkout.Session.list_line_items(session_id, limit=100, expand=["data.price.product"])
    items = []
    for li in result.data:
        price = li.price
        product = getattr(price, "product", None) if price else None
        # product is only an object when the expand took effect
        if isinstance(product, str):
            product = None
        metadata = getattr(product, "metadata", None)
        images = getattr(product, "images", None) or []
        quantity = li.quantity or 1
        if price is not None and price.unit_amount is not None:
            unit = from_minor_units(price.unit_amount)
        else:
            unit = round(from_minor_units(li.amount_total) / quantity, 2)
        items.append({
            "product_id": _meta(metadata, "product_id") or "",
            "name": li.description or getattr(product, "name", "") or "",
            "price": unit,
            "image": images[0] if images else "",
            "quantity": quantity,
            "size": _meta(metadata, "size"),
            "color": _meta(metadata, "color"),
        })
    return items


def shipping_address_from_session(session: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Map Stripe's address shape onto ours, or None when Stripe has none."""
    details = session.get("shipping_details") or (session.get("collected_information") or {}).get("shipping_details")
    address = (details or {}).get("address") or (session.get("customer_details") or {}).get("address")
    if not address or not address.get("line1"):
        return None
    street = address["line1"]
    if address.get("line2"):
        street = f"{street}, {address['line2']}"
    return {
        "street": street,
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "zip": address.get("postal_code") or "",
        "country": address.get("country") or "",
    }
