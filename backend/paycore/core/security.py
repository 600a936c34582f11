"""Webhook origin verification and internal API dependencies"""
import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

from fastapi import Header, HTTPException

from paycore.core.config import Settings, settings
from paycore.core.exceptions import AuthenticationFailure

security_logger = logging.getLogger("security")

SIGNATURE_HEADER = "X-Processor-Signature"
TIMESTAMP_HEADER = "X-Processor-Timestamp"


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """HMAC-SHA256 hex digest over timestamp + raw body"""
    message = timestamp.encode() + raw_body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    signature: str,
    timestamp: str,
    secret: str,
    tolerance_seconds: int = 0,
    now: Optional[float] = None
) -> bool:
    """Check a shared-secret signature in constant time.

    Args:
        raw_body: Request body exactly as received
        signature: Hex digest sent by the processor
        timestamp: Unix timestamp header sent alongside the signature
        secret: Shared webhook secret
        tolerance_seconds: Maximum age of the timestamp (0 disables the check)
        now: Override for the current time (tests)
    """
    if not secret or not signature or not timestamp:
        return False

    if tolerance_seconds:
        try:
            sent_at = int(timestamp)
        except ValueError:
            security_logger.warning(f"Webhook timestamp is not an integer: {timestamp!r}")
            return False
        current = now if now is not None else time.time()
        if abs(current - sent_at) > tolerance_seconds:
            security_logger.warning(f"Webhook timestamp outside tolerance window: {timestamp}")
            return False

    expected = compute_signature(secret, timestamp, raw_body)
    return hmac.compare_digest(expected, signature.strip().lower())


def verify_basic_auth(authorization: str, username: str, password: str) -> bool:
    """Check DataLink style HTTP Basic credentials in constant time"""
    if not username or not password or not authorization:
        return False
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return False
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    given_user, sep, given_pass = decoded.partition(":")
    if not sep:
        return False
    user_ok = hmac.compare_digest(given_user.encode(), username.encode())
    pass_ok = hmac.compare_digest(given_pass.encode(), password.encode())
    return user_ok and pass_ok


def verify_webhook_origin(
    headers: Mapping[str, str],
    raw_body: bytes,
    config: Settings = settings
) -> str:
    """Authenticate an inbound processor event before anything reads it.

    Returns the name of the method that succeeded ('signature', 'basic_auth'
    or 'bypass'). Raises AuthenticationFailure otherwise.
    """
    signature = headers.get(SIGNATURE_HEADER)
    timestamp = headers.get(TIMESTAMP_HEADER)
    authorization = headers.get("Authorization")

    if signature:
        if verify_signature(
            raw_body,
            signature,
            timestamp or "",
            config.PROCESSOR_WEBHOOK_SECRET,
            tolerance_seconds=config.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS
        ):
            return "signature"
        security_logger.warning("Webhook rejected: signature mismatch")
        raise AuthenticationFailure("Invalid signature")

    if authorization:
        if verify_basic_auth(
            authorization,
            config.PROCESSOR_DATALINK_USER,
            config.PROCESSOR_DATALINK_PASSWORD
        ):
            return "basic_auth"
        security_logger.warning("Webhook rejected: invalid DataLink credentials")
        raise AuthenticationFailure("Invalid credentials")

    if config.ENVIRONMENT == "development" and config.WEBHOOK_AUTH_BYPASS:
        security_logger.warning("Webhook accepted without credentials (development bypass enabled)")
        return "bypass"

    security_logger.warning("Webhook rejected: no signature or Authorization header")
    raise AuthenticationFailure("Missing webhook credentials")


def require_internal_token(x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token")) -> None:
    """Dependency: internal callers (payment controllers, payouts, operators)"""
    expected = settings.INTERNAL_API_TOKEN
    if not expected or not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        security_logger.warning("Internal API call rejected: bad or missing X-Internal-Token")
        raise HTTPException(401, "Invalid internal token")
