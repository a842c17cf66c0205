"""Periodic liveness checks for the relational store and the directory."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

import anyio

logger = logging.getLogger("identity.health")

Check = Callable[[], None]


@dataclass(frozen=True)
class CheckResult:
    ok: bool
    checked_at: datetime
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"ok": self.ok, "checkedAt": self.checked_at.isoformat()}
        if self.error:
            payload["error"] = self.error
        return payload


class HealthMonitor:
    """Runs named checks on an interval and keeps the latest result of each.

    The loop is owned by the application lifespan: :meth:`start` on startup and
    :meth:`stop` on shutdown. Results can also be refreshed on demand.
    """

    def __init__(self, checks: Mapping[str, Check], interval: Optional[float] = 20.0) -> None:
        self._checks = dict(checks)
        self._interval = interval
        self._results: Dict[str, CheckResult] = {}
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running or not self._interval:
            return
        self._task = asyncio.create_task(self._run(), name="identity-health-monitor")
        logger.info("Health monitor started (interval %.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Health monitor stopped")

    async def _run(self) -> None:
        interval = self._interval
        if not interval:
            return
        while True:
            await self.run_checks()
            await asyncio.sleep(interval)

    async def run_checks(self) -> Dict[str, CheckResult]:
        async with self._lock:
            for name, check in self._checks.items():
                self._results[name] = await self._run_check(name, check)
            return dict(self._results)

    @staticmethod
    async def _run_check(name: str, check: Check) -> CheckResult:
        try:
            await anyio.to_thread.run_sync(check)
        except Exception as exc:  # any failure marks the check as down
            logger.warning("Health check %s failed: %s", name, exc)
            return CheckResult(ok=False, checked_at=datetime.now(timezone.utc), error=str(exc))
        return CheckResult(ok=True, checked_at=datetime.now(timezone.utc))

    def snapshot(self) -> Dict[str, object]:
        if not self._results:
            status = "unknown"
        elif all(result.ok for result in self._results.values()):
            status = "ok"
        else:
            status = "degraded"
        return {
            "status": status,
            "checks": {name: result.as_dict() for name, result in self._results.items()},
        }


__all__ = ["CheckResult", "HealthMonitor"]
