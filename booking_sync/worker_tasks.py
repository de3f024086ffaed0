from __future__ import annotations

import logging
from typing import Any

from .config import AppSettings
from .ical.service import run_sync_safely

_logger = logging.getLogger(__name__)


def process_sync_job(
    configuration_id: str,
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any]:
    """RQ entry point: run one sync and return its result as a dict."""
    cfg = settings or AppSettings()
    result = run_sync_safely(configuration_id, settings=cfg)
    if not result.success:
        _logger.warning(
            "background sync failed configuration=%s error_type=%s error=%s",
            configuration_id,
            result.error_type,
            result.error,
        )
    return result.as_dict()


__all__ = ["process_sync_job"]
