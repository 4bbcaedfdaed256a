"""Best-effort execution for tracking calls, webhooks and profile upserts."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def best_effort(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Any]:
    """Run ``fn`` and return its result, or None when it raises.

    Failures are logged with ``label`` and never reach the caller, so a
    failing side effect cannot change the outcome of the request that
    triggered it. Nothing is retried.
    """
    try:
        return fn(*args, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.exception('Best-effort %s failed: %s', label, exc)
        return None
