"""Optional LangSmith tracing, a no-op unless LANGSMITH_API_KEY is set.

The key and the import are checked when a wrapper is requested, not at
import time. A configured key without langsmith installed logs a warning and
continues untraced.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

import structlog

_log = structlog.get_logger("shopscout.tracing")


def _enabled() -> bool:
    return bool(os.environ.get("LANGSMITH_API_KEY", "").strip())


def _identity(fn: Any) -> Any:
    return fn


def _warn_missing() -> None:
    _log.warning(
        "langsmith_not_installed",
        reason="LANGSMITH_API_KEY is set but langsmith is not installed; "
        "install the 'tracing' extra",
    )


def wrap_anthropic(client: Any) -> Any:
    """Return the Anthropic client wrapped for auto-tracing when enabled."""
    if not _enabled():
        return client
    try:
        from langsmith.wrappers import wrap_anthropic as _wrap
    except ImportError:
        _warn_missing()
        return client
    try:
        return _wrap(client)
    except Exception as exc:
        _log.error("langsmith_wrap_failed", error=str(exc), error_type=type(exc).__name__)
        return client


def traceable(**kwargs: Any) -> Callable[[Any], Any]:
    """Decorator factory mirroring ``langsmith.traceable``; identity when disabled."""
    if not _enabled():
        return _identity
    try:
        from langsmith import traceable as _traceable
    except ImportError:
        _warn_missing()
        return _identity
    try:
        return _traceable(**kwargs)
    except Exception as exc:
        _log.error("langsmith_traceable_failed", error=str(exc), error_type=type(exc).__name__)
        return _identity
