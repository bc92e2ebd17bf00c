import logging

from pydantic import BaseModel

from stock_analyst.app.logging import event


class RelayMetrics(BaseModel):
    session_id: str
    outcome: str = "pending"  # done | upstream_http | upstream_transport | cancelled
    delta_count: int = 0
    char_count: int = 0
    latency_ms: int = 0


def log_relay(metrics: RelayMetrics) -> None:
    level = logging.INFO if metrics.outcome in ("done", "cancelled") else logging.WARNING
    event("relay finished", metrics.model_dump(), level=level)
