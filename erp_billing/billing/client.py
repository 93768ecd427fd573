from typing import Any, Dict
import hashlib
import uuid

from flask import current_app
from stripe import StripeClient

EXTENSION_KEY = "stripe_client"


def build_client(config) -> StripeClient | None:
    """
    Construct the process-wide Stripe client from validated configuration.
    Returns None when no secret key is configured (dev/test only; create_app()
    refuses to start without one in staging/production).
    """
    key = config.get("STRIPE_SECRET_KEY")
    if not key:
        return None
    kwargs: Dict[str, Any] = {"max_network_retries": config.get("STRIPE_MAX_NETWORK_RETRIES", 2)}
    if config.get("STRIPE_API_VERSION"):
        kwargs["stripe_version"] = config["STRIPE_API_VERSION"]
    return StripeClient(key, **kwargs)


def current_client() -> StripeClient:
    client = current_app.extensions.get(EXTENSION_KEY)
    if client is None:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    return client


def make_idempotency_key(namespace: str, *parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return f"{namespace}:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def to_dict(obj: Any) -> Dict[str, Any]:
    """Normalize Stripe objects to plain dicts for JSON and logs; to_dict() recurses into nested objects."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def request_options(namespace: str) -> Dict[str, Any]:
    """Fresh idempotency key for one logical call; the library reuses it on its own retries."""
    return {"idempotency_key": f"{namespace}:{uuid.uuid4().hex}"}
