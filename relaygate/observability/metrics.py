"""Log-backed metric counters."""

from __future__ import annotations

from relaygate.util.logger import get_logger

_metrics_logger = get_logger("metrics")


def emit_counter(name: str, value: int = 1, labels: dict | None = None) -> None:
    _metrics_logger.info("metric counter name=%s value=%s labels=%s", name, value, labels or {})
