"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_get_current_subscriber: Optional[Callable[..., Any]] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_subscriber: Callable[..., Any],
) -> None:
    """Register application-wide dependencies required by modular routers."""

    global _get_conn
    global _get_current_subscriber

    _get_conn = get_conn
    _get_current_subscriber = get_current_subscriber


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_current_subscriber(*args: Any, **kwargs: Any) -> Any:
    """Resolve the :class:`SubscriberRef` acting on the current request."""

    dependency = _require(_get_current_subscriber, "get_current_subscriber")
    return dependency(*args, **kwargs)
