"""
Webhook authentication for gateway callbacks.

A callback is accepted when either:
- its signature header carries the HMAC-SHA256 of the raw body keyed with
  WEBHOOK_SECRET (bare digest, or compound `t=<ts>,v1=<hex>` / `sha256=<hex>`,
  hex or base64), or
- its `x-api-key` header equals our ZenoPay API key.

Outside production a missing secret or a stale timestamp only logs a warning.
"""

import base64
import binascii
import hashlib
import hmac
import os
import time
from datetime import datetime
from typing import Dict, Optional

import structlog

from errors import WebhookAuthError

logger = structlog.get_logger().bind(component="webhook_security")


class WebhookSecurityConfig:
    """Webhook verification settings from environment"""

    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
    ZENOPAY_API_KEY = os.getenv("ZENOPAY_API_KEY", "")
    IS_PRODUCTION = os.getenv("ENV", "development").lower() == "production"
    TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))


config = WebhookSecurityConfig()


def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    """Split `k=v,k=v` into a dict; headers without `=` pairs give {}"""
    parsed: Dict[str, str] = {}
    if not header:
        return parsed
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep and key and value:
            parsed[key] = value
    return parsed


def _parse_timestamp(value: str) -> Optional[float]:
    if value.isdigit():
        return float(value)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _decode_hex(value: str) -> Optional[bytes]:
    try:
        return bytes.fromhex(value)
    except ValueError:
        return None


def _decode_base64(value: str) -> Optional[bytes]:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


class WebhookVerifier:
    def __init__(
        self,
        secret: Optional[str] = None,
        api_key: Optional[str] = None,
        production: Optional[bool] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        self.secret = config.WEBHOOK_SECRET if secret is None else secret
        self.api_key = config.ZENOPAY_API_KEY if api_key is None else api_key
        self.production = config.IS_PRODUCTION if production is None else production
        self.tolerance_seconds = config.TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds

    def verify_signature(self, raw_body: bytes, header: Optional[str], now: Optional[float] = None) -> bool:
        if not header:
            return False

        if not self.secret:
            logger.warning("webhook_secret_missing", production=self.production)
            return not self.production

        parsed = parse_signature_header(header)
        provided = parsed.get("v1") or parsed.get("sha256") or header.strip()

        ts_raw = parsed.get("t")
        if ts_raw:
            ts = _parse_timestamp(ts_raw)
            current = time.time() if now is None else now
            if ts is None or abs(current - ts) > self.tolerance_seconds:
                logger.warning("webhook_timestamp_outside_window", timestamp=ts_raw)
                if self.production:
                    return False
        else:
            logger.debug("webhook_signature_without_timestamp")

        expected = hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha256).digest()

        as_hex = _decode_hex(provided)
        if as_hex is not None and hmac.compare_digest(as_hex, expected):
            return True

        as_b64 = _decode_base64(provided)
        if as_b64 is not None and hmac.compare_digest(as_b64, expected):
            return True

        return False

    def verify_api_key(self, provided: Optional[str]) -> bool:
        if not provided or not self.api_key:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), self.api_key.encode("utf-8"))

    def authenticate(self, raw_body: bytes, signature: Optional[str], api_key: Optional[str]) -> None:
        """Raise WebhookAuthError unless the HMAC or the API key checks out"""
        if self.verify_signature(raw_body, signature) or self.verify_api_key(api_key):
            return
        logger.warning("webhook_auth_failed", has_signature=bool(signature), has_api_key=bool(api_key))
        raise WebhookAuthError("Invalid webhook authentication")


def sign_payload(secret: str, raw_body: bytes, timestamp: Optional[int] = None) -> str:
    """Build a compound signature header for outgoing or test payloads"""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if timestamp is None:
        return digest
    return f"t={timestamp},v1={digest}"
