"""Periodic health probing of both stores."""
from datetime import datetime, timezone
from typing import Callable

from loguru import logger

from routing.router import HealthSnapshot, StoreHealth


class HealthMonitor:
    """
    Holds the latest HealthSnapshot used by routing.

    ``refresh()`` probes both stores and replaces the snapshot in a single
    assignment; readers never lock and may see a snapshot a few seconds old.
    The query path only reads, it never refreshes.
    """

    def __init__(self, postgres_probe: Callable[[], StoreHealth], neo4j_probe: Callable[[], StoreHealth]):
        """
        Args:
            postgres_probe: Returns the vector/relational store's health
            neo4j_probe: Returns the graph store's health
        """
        self.logger = logger.bind(name=self.__class__.__name__)
        self.postgres_probe = postgres_probe
        self.neo4j_probe = neo4j_probe
        self._snapshot = HealthSnapshot.unknown()

    def _probe(self, name: str, probe: Callable[[], StoreHealth]) -> StoreHealth:
        try:
            return probe()
        except Exception as e:
            self.logger.warning(f"{name} health probe raised: {e}")
            return StoreHealth(
                healthy=False,
                latency_ms=-1,
                error=str(e) or e.__class__.__name__,
                checked_at=datetime.now(timezone.utc),
            )

    def refresh(self) -> HealthSnapshot:
        snapshot = HealthSnapshot(
            postgres=self._probe("postgres", self.postgres_probe),
            neo4j=self._probe("neo4j", self.neo4j_probe),
        )
        previous = self._snapshot
        self._snapshot = snapshot
        for name in ("postgres", "neo4j"):
            before, after = getattr(previous, name), getattr(snapshot, name)
            if before.healthy != after.healthy:
                state = "healthy" if after.healthy else f"unhealthy ({after.error})"
                self.logger.info(f"{name} is now {state}")
        return snapshot

    def snapshot(self) -> HealthSnapshot:
        return self._snapshot
