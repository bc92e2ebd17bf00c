import logging
from typing import Any, Dict

from rich.logging import RichHandler


def configure_logging(level: int | str = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    # httpx logs every request line at INFO, one per upstream turn is enough noise
    logging.getLogger("httpx").setLevel(logging.WARNING)


def event(msg: str, extra: Dict[str, Any] | None = None, level: int = logging.INFO) -> None:
    fields = " ".join(f"{k}={v}" for k, v in (extra or {}).items())
    logging.getLogger("stock_analyst.events").log(level, f"{msg} {fields}".rstrip())
