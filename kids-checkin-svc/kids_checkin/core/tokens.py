from __future__ import annotations
import secrets

# 32 random bytes -> 43 url-safe characters, no padding
TOKEN_BYTES = 32

def generate_secure_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)
