"""
Utility functions for the inbound webhook.
"""

import base64
import hmac
import hashlib
import logging
from typing import Mapping, Optional
from xml.sax.saxutils import escape

logger = logging.getLogger(__name__)


def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """
    Compute the X-Twilio-Signature value for a form-encoded webhook.

    The signed payload is the full request URL followed by every POST
    parameter name and value, sorted by name.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(
        auth_token.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify an X-Twilio-Signature header.

    Args:
        url: Full URL the webhook was delivered to
        params: Decoded form parameters
        signature: Value of the X-Twilio-Signature header
        auth_token: Account auth token

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        logger.info("Webhook signature missing")
        return False

    expected_signature = compute_twilio_signature(url, params, auth_token)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def twiml_response(message: Optional[str] = None) -> str:
    """
    TwiML document for a webhook reply.

    With ``message`` the sender gets it as an auto-reply; without, the
    response is empty and nothing is sent back.
    """
    body = f"<Message>{escape(message)}</Message>" if message else ""
    return f'<?xml version="1.0" encoding="UTF-8"?><Response>{body}</Response>'
