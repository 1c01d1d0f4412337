"""Security helpers for headers, input sanitation, and request metadata."""
from __future__ import annotations

import hashlib
import secrets
from typing import Mapping, Optional

import bleach
from flask import has_request_context, request


def clean_text(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """Strip markup from citizen-supplied free text."""
    if value is None:
        return None
    cleaned = bleach.clean(str(value), tags=[], attributes={}, strip=True).strip()
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned


def sanitize_input(data: Mapping) -> dict:
    """Return a cleaned copy of query arguments."""
    return {clean_text(str(key)): clean_text(str(value)) for key, value in data.items()}


def apply_security_headers(response, force_https: bool = False):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    if force_https or (has_request_context() and request.is_secure):
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def request_metadata() -> dict:
    """IP and user agent for audit entries; empty outside a request."""
    if not has_request_context():
        return {}
    return {
        "ip_address": request.headers.get("X-Forwarded-For", request.remote_addr or "").split(",")[0].strip() or None,
        "user_agent": (request.headers.get("User-Agent") or "unknown")[:255],
    }


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    """Enforce a sane password baseline for production."""
    if len(password) < 12:
        return False, "Password must be at least 12 characters long."
    if password.lower() == password or password.upper() == password:
        return False, "Use a mix of upper and lower case characters."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    if not any(c in "!@#$%^&*()-_=+[]{}|;:,.<>?/" for c in password):
        return False, "Include at least one symbol."
    return True, None
