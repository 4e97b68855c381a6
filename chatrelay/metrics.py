from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Dict

logger = logging.getLogger("uvicorn.error")

COUNTER_NAMES = ("success", "streamed", "simulated", "rejected", "throttled", "upstream_failed", "failed")


class RelayMetrics:
    """Request counters: a running total for /stats and a per-second window for the log."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._totals: Dict[str, int] = {name: 0 for name in COUNTER_NAMES}
        self._window: Dict[str, int] = {name: 0 for name in COUNTER_NAMES}

    def record(self, kind: str) -> None:
        with self._lock:
            self._totals[kind] += 1
            self._window[kind] += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._totals)

    def drain_window(self) -> Dict[str, int]:
        with self._lock:
            window = dict(self._window)
            for name in self._window:
                self._window[name] = 0
        return window


async def metrics_reporter(metrics: RelayMetrics, service_name: str, interval: float = 1.0) -> None:
    while True:
        await asyncio.sleep(interval)
        window = metrics.drain_window()
        total = window["success"] + window["rejected"] + window["throttled"] + window["upstream_failed"] + window["failed"]
        if total:
            logger.info(
                "node=%s throughput=%d/s success=%d streamed=%d rejected=%d throttled=%d upstream_failed=%d failed=%d",
                service_name,
                total,
                window["success"],
                window["streamed"],
                window["rejected"],
                window["throttled"],
                window["upstream_failed"],
                window["failed"],
            )
