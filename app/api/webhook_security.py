"""Twilio webhook signature validation.

Twilio signs each webhook call with the account's auth token over the full
public URL plus the POSTed form parameters. Behind a reverse proxy the URL
the app sees differs from the one Twilio called, so it is rebuilt from the
X-Forwarded-Proto / X-Forwarded-Host headers when those are trusted.
"""

from typing import Mapping

from fastapi import Request
from twilio.request_validator import RequestValidator

SIGNATURE_HEADER = "X-Twilio-Signature"


def public_url(request: Request, trust_forwarded_headers: bool = True) -> str:
    """URL of the request as the caller addressed it."""
    url = request.url
    if trust_forwarded_headers:
        proto = request.headers.get("x-forwarded-proto")
        host = request.headers.get("x-forwarded-host")
        if proto:
            url = url.replace(scheme=proto.split(",")[0].strip())
        if host:
            url = url.replace(netloc=host.split(",")[0].strip())
    return str(url)


def is_valid_signature(
    validator: RequestValidator,
    url: str,
    params: Mapping[str, str],
    signature: str,
) -> bool:
    if not signature:
        return False
    return validator.validate(url, dict(params), signature)
