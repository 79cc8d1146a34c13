from __future__ import annotations

import hashlib
import hmac
from typing import Mapping, Optional

CALLBACK_SIGNATURE_HEADERS = ["x-signature", "x-webhook-signature"]


class SignatureVerificationError(Exception):
    pass


def _header_value(headers: Mapping[str, str], candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _verify_hmac_sha256(raw_body: bytes, secret: str, incoming_signature: str) -> bool:
    provided = incoming_signature.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    return hmac.compare_digest(sign_payload(raw_body, secret), provided)


def verify_callback_signature(headers: Mapping[str, str], raw_body: bytes, secret: str) -> None:
    """HMAC-SHA256 over the raw body. An empty secret disables the check."""
    if not secret:
        return
    signature = _header_value(headers, CALLBACK_SIGNATURE_HEADERS)
    if not signature:
        raise SignatureVerificationError("missing callback signature header")
    if not _verify_hmac_sha256(raw_body, secret, signature):
        raise SignatureVerificationError("invalid callback signature")
