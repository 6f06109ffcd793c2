from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from starlette.datastructures import Headers


class SignatureVerificationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def sign_body(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _verify_hmac_sha256(raw_body: bytes, secret: str, incoming_signature: str) -> bool:
    provided = incoming_signature.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    return hmac.compare_digest(sign_body(raw_body, secret), provided)


def _verify(
    headers: Headers,
    raw_body: bytes,
    secret: str,
    *,
    provider: str,
    header_names: list[str],
) -> None:
    if not secret:
        return
    signature = _header_value(headers, header_names)
    if not signature:
        raise SignatureVerificationError(f"missing {provider} signature header")
    if not _verify_hmac_sha256(raw_body, secret, signature):
        raise SignatureVerificationError(f"invalid {provider} signature")


def verify_chat_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    _verify(
        headers,
        raw_body,
        secret,
        provider="chat",
        header_names=["x-hub-signature-256", "x-chat-signature", "x-webhook-signature"],
    )


def verify_payment_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    _verify(
        headers,
        raw_body,
        secret,
        provider="payment",
        header_names=["x-openpix-signature", "x-payment-signature", "x-webhook-signature"],
    )
