import hashlib
import os
from typing import Optional, Set

from fastapi import Header, HTTPException


def _load_keys() -> Set[str]:
    raw = os.getenv("API_KEYS", "")
    return {k.strip() for k in raw.split(",") if k.strip()}


API_KEYS: Set[str] = _load_keys()


def keys_required() -> bool:
    return bool(API_KEYS)


def check_api_key(key: Optional[str]) -> bool:
    """
    Returns True if:
      - API_KEYS is empty (open mode), or
      - 'key' is provided and is in API_KEYS.
    """
    if not API_KEYS:
        return True
    return bool(key) and key in API_KEYS


def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency; returns the presented key ('' in open mode without one)."""
    if not check_api_key(x_api_key):
        raise HTTPException(status_code=401, detail="invalid or missing API key")
    return x_api_key or ""


def extract_client_key(api_key: Optional[str], host: str) -> str:
    """Rate-limit identity: a hash of the API key when present, else the client host."""
    if api_key:
        return "key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
    return "ip:" + (host or "anon")
