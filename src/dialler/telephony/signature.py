"""
Twilio request signature validation.

Twilio signs ``url + key1 + value1 + key2 + value2 ...`` (POST params sorted
by key) with HMAC-SHA1 keyed by the account auth token, base64-encoded into
``X-Twilio-Signature``.
"""

import hashlib
import hmac
from base64 import b64encode
from collections.abc import Mapping


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    data_str = url
    for key in sorted(params.keys()):
        data_str += key + params[key]

    digest = hmac.new(
        auth_token.encode("utf-8"),
        data_str.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return b64encode(digest).decode("utf-8")


def validate_twilio_signature(
    auth_token: str,
    url: str,
    params: Mapping[str, str],
    signature: str | None,
) -> bool:
    """Constant-time check of a Twilio signature header."""
    if not signature:
        return False
    expected = compute_twilio_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature)
