"""
Signing and delivery of partner webhooks.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-KCS-Signature"


def serialize_payload(payload: dict) -> bytes:
    """The exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass
class WebhookDelivery:
    delivered: bool
    signature: str
    status_code: int | None = None
    error: str | None = None


def send_signed_webhook(url: str, payload: dict, secret: str | None, timeout: int = 15) -> WebhookDelivery:
    """
    POST `payload` to `url` signed with `secret`.

    Network errors and non-2xx responses are reported in the result rather
    than raised; callers decide whether a failed delivery matters.
    """
    body = serialize_payload(payload)
    signature = sign_body(body, secret or "")
    headers = {"Content-Type": "application/json", SIGNATURE_HEADER: signature}
    try:
        response = requests.post(url, data=body, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning(f"Webhook to {url} failed: {exc}")
        return WebhookDelivery(delivered=False, signature=signature, error=str(exc))

    if not 200 <= response.status_code < 300:
        logger.warning(f"Webhook to {url} returned HTTP {response.status_code}")
        return WebhookDelivery(
            delivered=False,
            signature=signature,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )
    return WebhookDelivery(delivered=True, signature=signature, status_code=response.status_code)
