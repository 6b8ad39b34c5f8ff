"""
Logging setup and the in-process counter sink.

Counters are how operators see what the logs alone would bury: dropped
order events (the order ledger is ahead of the inventory ledger), dead-lettered
messages and stock clamps.
"""

import logging
from collections import Counter


def configure_logging(service_name: str, instance_id: str, level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format=f"%(asctime)s [{service_name}:{instance_id}] %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _key(name: str, labels: dict) -> str:
    if not labels:
        return name
    inner = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{inner}}}"


class Counters:
    """Labelled monotonic counters, e.g. ``events_acked_total{queue=mail_notification}``."""

    def __init__(self) -> None:
        self._values: Counter[str] = Counter()

    def incr(self, name: str, amount: int = 1, **labels) -> None:
        self._values[_key(name, labels)] += amount

    def get(self, name: str, **labels) -> int:
        return self._values[_key(name, labels)]

    def snapshot(self) -> dict[str, int]:
        return dict(sorted(self._values.items()))
