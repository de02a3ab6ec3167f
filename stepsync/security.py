from __future__ import annotations

import hmac

from fastapi import Header, HTTPException

from .settings import get_env


def _shared_secret() -> str:
    try:
        return get_env("API_KEY")
    except RuntimeError:
        return ""


def require_api_key(x_api_key: str | None = Header(default=None, alias="X-Api-Key")) -> None:
    """Shared-secret guard for the sync endpoints. Player identity comes from the request body."""
    secret = _shared_secret()
    if not secret:
        # No key configured means no sync traffic at all
        raise HTTPException(status_code=500, detail="Sync server misconfigured: API_KEY not set")
    if x_api_key is None or not hmac.compare_digest(x_api_key.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid or missing X-Api-Key")
