"""
Shared environment configuration for WGC.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

WGC_DEFAULT_REGION = "us-east-1"
WGC_DEFAULT_CONNECTION_LABEL = "INTEGRATION_AWS"
WGC_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def wgc_root() -> str:
    return _env("WGC_ROOT") or ".wgc"


def default_region() -> str:
    return _env("WGC_REGION") or _env("AWS_REGION") or WGC_DEFAULT_REGION


def default_connection_label() -> Optional[str]:
    return _env("WGC_CONNECTION_LABEL") or WGC_DEFAULT_CONNECTION_LABEL


def default_notification() -> Dict[str, Any]:
    """
    Teams destination for generated notification steps.
    """

    return {
        "channel_id": _env("WGC_TEAMS_CHANNEL_ID") or "",
        "team_id": _env("WGC_TEAMS_TEAM_ID"),
        "tenant_id": _env("WGC_TEAMS_TENANT_ID"),
    }


def default_error_email() -> Optional[str]:
    return _env("WGC_ERROR_EMAIL")


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or _env("WGC_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.WARNING), format=WGC_LOG_FORMAT)
