"""
Loads local environment files and typed settings for dermaai-service.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

_TRUTHY = {"1", "true", "yes", "on"}


def load_service_env() -> None:
    """
    Loads service-local `.env` and `.env.local` if present.
    Existing shell exports take precedence.
    """
    service_dir = Path(__file__).resolve().parent
    load_dotenv(service_dir / ".env", override=False)
    load_dotenv(service_dir / ".env.local", override=False)


def env_str(name: str, default: str = "", *fallbacks: str) -> str:
    for key in (name, *fallbacks):
        raw = os.getenv(key)
        if raw is not None and raw.strip():
            return raw.strip()
    return default


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    raw = os.getenv(name) or ""
    items = [part.strip() for part in raw.split(",") if part.strip()]
    return items or list(default or [])
