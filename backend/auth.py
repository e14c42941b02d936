"""
X-API-Key guards for the pipeline API.

Operators read run state; only the admin may trigger runs or reset circuits.
"""

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader
import os
from typing import Dict
from dotenv import load_dotenv

load_dotenv()

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

MAX_OPERATOR_KEYS = 5
DEV_FALLBACK_KEY = "dev-key-insecure"


def get_valid_api_keys() -> Dict[str, str]:
    """key -> user id, read from API_KEY_USER1..5 and ADMIN_API_KEY."""
    keys = {
        os.getenv(f"API_KEY_USER{i}"): f"user{i}"
        for i in range(1, MAX_OPERATOR_KEYS + 1)
        if os.getenv(f"API_KEY_USER{i}")
    }
    admin_key = os.getenv("ADMIN_API_KEY")
    if admin_key:
        keys[admin_key] = "admin"

    if not keys:
        if os.getenv("ENVIRONMENT") != "development":
            raise ValueError("No pipeline API keys configured; set ADMIN_API_KEY or API_KEY_USER1")
        keys[DEV_FALLBACK_KEY] = "admin"
    return keys


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    # Re-read per request so a rotated key takes effect without a restart.
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    user = get_valid_api_keys().get(api_key)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return user


def _admin_users() -> set:
    if os.getenv("ADMIN_API_KEY"):
        return {"admin"}
    return {"admin", "user1"}


async def verify_admin_api_key(user: str = Security(verify_api_key)) -> str:
    """Pipeline control: the ADMIN_API_KEY holder, else user1 when no admin key is set."""
    if user not in _admin_users():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Pipeline control requires the admin key",
        )
    return user
