"""
Random token and id generators — pure, side-effect-free functions.

All generators use cryptographically secure sources (``secrets`` module).
"""

from __future__ import annotations

import secrets


def generate_secure_token(length: int = 32) -> str:
    """Generate a cryptographically secure URL-safe random token.

    Args:
        length: Number of random bytes before base64 encoding (default 32).
            The resulting string will be longer than *length* characters.
    """
    return secrets.token_urlsafe(length)


def generate_session_token() -> str:
    """Opaque token identifying an anonymous visitor session."""
    return f"sess_{generate_secure_token(24)}"
