import logging
import os

from fastapi import Request

from osnovci.core.api_response import get_request_id

# Capability tokens are only ever logged with their tail masked.
SENSITIVE_FIELDS = {"link_code", "email_code", "qr_token", "pin"}

# Peers whose X-Forwarded-For is believed. Anyone else is keyed by socket address.
TRUSTED_PROXIES = {x.strip() for x in os.getenv("TRUSTED_PROXIES", "").split(",") if x.strip()}


def mask_secret(value) -> str:
    text = str(value)
    if len(text) <= 2:
        return "***"
    return f"{text[:2]}***"


def log_business_event(
    logger: logging.Logger,
    request: Request | None,
    *,
    event: str,
    **fields,
) -> None:
    request_id = get_request_id(request) if request is not None else "-"
    chunks = [f"event={event}", f"request_id={request_id}"]
    for key, value in fields.items():
        if key in SENSITIVE_FIELDS and value is not None:
            value = mask_secret(value)
        chunks.append(f"{key}={value}")
    logger.info("business_event %s", " ".join(chunks))


def client_ip(request: Request) -> str | None:
    peer = request.client.host if request.client and request.client.host else None
    if peer and peer in TRUSTED_PROXIES:
        hops = [x.strip() for x in request.headers.get("x-forwarded-for", "").split(",") if x.strip()]
        for hop in reversed(hops):
            if hop not in TRUSTED_PROXIES:
                return hop[:64]
    return peer[:64] if peer else None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent", "")[:255] or None
