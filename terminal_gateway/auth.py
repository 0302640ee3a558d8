import hashlib
import hmac
import os
from typing import Optional

SECRET_ENV = "TERMINAL_GATEWAY_SECRET"


def get_secret() -> Optional[str]:
    """Shared secret from the environment, or None (dev mode, no auth)."""
    secret = os.environ.get(SECRET_ENV, "")
    return secret or None


def derive_api_token(secret: str) -> str:
    """HMAC(secret, "api"), the bearer token for mutations."""
    return hmac.new(secret.encode(), b"api", hashlib.sha256).hexdigest()


def check_token(secret: str, token: Optional[str]) -> bool:
    if not token:
        return False
    return hmac.compare_digest(token, derive_api_token(secret))
