"""Scheduler integration for membership expiration sweeps."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from backend.app.memberships import SweepSummary
from backend.app.services.memberships import (
    get_expiration_sweep,
    get_membership_config,
    get_membership_service,
)

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_SweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "checked": 0,
    "expired": 0,
    "failed": 0,
    "provider_syncs_synced": 0,
    "provider_syncs_failed": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(
    completed_at: datetime,
    summary: SweepSummary,
    sync_counts: Dict[str, int],
) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["checked"] = int(_SWEEP_METRICS.get("checked", 0)) + summary.checked
        _SWEEP_METRICS["expired"] = int(_SWEEP_METRICS.get("expired", 0)) + summary.expired
        _SWEEP_METRICS["failed"] = int(_SWEEP_METRICS.get("failed", 0)) + summary.failed
        for key in ("synced", "failed"):
            metric = f"provider_syncs_{key}"
            _SWEEP_METRICS[metric] = int(_SWEEP_METRICS.get(metric, 0)) + sync_counts.get(key, 0)
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["failed"] = int(_SWEEP_METRICS.get("failed", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_expiration_job(*, now: Optional[datetime] = None) -> SweepSummary:
    """Expire due memberships, then retry pending provider cancellations."""

    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        summary = get_expiration_sweep().run(current_time)
        sync_counts = get_membership_service().retry_pending_provider_syncs()
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Membership expiration job failed")
        raise
    else:
        _record_run_success(current_time, summary, sync_counts)
        logger.info(
            "Membership expiration job completed",
            extra={
                **summary.to_dict(),
                "provider_syncs_checked": sync_counts.get("checked", 0),
                "provider_syncs_synced": sync_counts.get("synced", 0),
                "provider_syncs_failed": sync_counts.get("failed", 0),
            },
        )
        return summary


class _SweepWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="membership-sweeps")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop.wait(self._initial_delay):
            return
        while not self._stop.is_set():
            try:
                run_expiration_job()
            except Exception:
                # Logged inside run_expiration_job; the next run retries.
                pass
            if self._stop.wait(self._interval):
                break


def start_membership_sweeps(*, initial_delay: float = 60.0) -> None:
    global _worker
    config = get_membership_config()
    if not config.sweep_enabled:
        logger.info("Membership sweeps disabled by configuration")
        return
    with _scheduler_lock:
        if _worker is not None:
            return
        _worker = _SweepWorker(initial_delay=initial_delay, interval=config.sweep_interval_seconds)
        _worker.start()
        logger.info(
            "Membership sweep scheduler started",
            extra={
                "initial_delay_seconds": round(initial_delay, 2),
                "interval_seconds": config.sweep_interval_seconds,
            },
        )


def stop_membership_sweeps() -> None:
    global _worker
    with _scheduler_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Membership sweep scheduler stopped")


def get_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "checked": 0,
                "expired": 0,
                "failed": 0,
                "provider_syncs_synced": 0,
                "provider_syncs_failed": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_sweep_metrics",
    "run_expiration_job",
    "start_membership_sweeps",
    "stop_membership_sweeps",
]
