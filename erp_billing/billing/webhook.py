import stripe

from erp_billing.billing.errors import SignatureError


class WebhookVerifier:
    """
    Verifies a raw webhook body against its signature header.
    The signing secret is supplied by the caller on every call.
    """

    def __init__(self, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.tolerance = tolerance

    def verify(self, payload: bytes | str, signature: str | None, secret: str | None):
        if not secret:
            raise SignatureError("Webhook signing secret is not configured")
        if not signature:
            raise SignatureError("Missing signature header")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            return stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=secret,
                tolerance=self.tolerance,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise SignatureError(f"Webhook signature verification failed: {exc}") from exc
