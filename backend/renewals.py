"""Scheduler integration for the subscription renewal sweep."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from backend.app.services.subscriptions import get_subscription_config, get_subscription_service
from backend.app.subscriptions import RenewalSweepSummary

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_RenewalWorker"] = None

_RENEWAL_METRICS: Dict[str, object] = {
    "runs": 0,
    "renewed": 0,
    "skipped": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _RENEWAL_METRICS["runs"] = int(_RENEWAL_METRICS.get("runs", 0)) + 1
        _RENEWAL_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: RenewalSweepSummary) -> None:
    with _metrics_lock:
        _RENEWAL_METRICS["renewed"] = int(_RENEWAL_METRICS.get("renewed", 0)) + summary.renewed
        _RENEWAL_METRICS["skipped"] = int(_RENEWAL_METRICS.get("skipped", 0)) + summary.skipped
        _RENEWAL_METRICS["failures"] = int(_RENEWAL_METRICS.get("failures", 0)) + summary.failed
        _RENEWAL_METRICS["last_success_at"] = completed_at
        _RENEWAL_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _RENEWAL_METRICS["failures"] = int(_RENEWAL_METRICS.get("failures", 0)) + 1
        _RENEWAL_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_renewal_job(*, now: Optional[datetime] = None) -> RenewalSweepSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    config = get_subscription_config().renewal
    _record_run_start(current_time)
    try:
        summary = get_subscription_service().process_due_renewals(
            current_time,
            gateways=config.gateways,
            batch_size=config.batch_size,
        )
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Subscription renewal job failed")
        raise
    else:
        _record_run_success(current_time, summary)
        logger.info("Subscription renewal job completed", extra=summary.to_dict())
        return summary


class _RenewalWorker(Thread):
    def __init__(self, *, interval: float):
        super().__init__(daemon=True, name="subscription-renewals")
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        while not self._stop.is_set():
            try:
                run_renewal_job()
            except Exception as exc:
                logger.warning(
                    "Renewal sweep will retry next interval",
                    extra={"error": f"{type(exc).__name__}: {exc}", "interval_seconds": self._interval},
                )
            if self._stop.wait(self._interval):
                break


def start_renewal_scheduler(interval: Optional[float] = None) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        seconds = interval if interval is not None else get_subscription_config().renewal.interval_seconds
        _worker = _RenewalWorker(interval=seconds)
        _worker.start()
        logger.info("Subscription renewal scheduler started", extra={"interval_seconds": seconds})


def shutdown_renewal_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Subscription renewal scheduler stopped")


def get_renewal_metrics() -> Dict[str, object]:
    with _metrics_lock:
        snapshot = dict(_RENEWAL_METRICS)
    for key in ("last_run_at", "last_success_at"):
        value = snapshot.get(key)
        snapshot[key] = value.isoformat() if isinstance(value, datetime) else None
    return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _RENEWAL_METRICS.update(
            {
                "runs": 0,
                "renewed": 0,
                "skipped": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_renewal_metrics",
    "run_renewal_job",
    "shutdown_renewal_scheduler",
    "start_renewal_scheduler",
]
