"""Per-route circuit breaker fed by hard provider failures.

Only hard failures (auth, model_not_found, provider_init) count here; transient
errors belong to the retry policy. A route that keeps failing hard is skipped
by the session loop while its circuit is open.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Circuit:
    failures: Deque[float] = field(default_factory=deque)
    open_until: float = 0.0
    last_kind: Optional[str] = None


class RouteCircuitBreaker:
    """Opens a route after ``threshold`` hard failures within ``window_s``, for ``cooldown_s``."""

    def __init__(
        self,
        *,
        threshold: int = 3,
        window_s: float = 600.0,
        cooldown_s: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.window_s = window_s
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._circuits: Dict[str, _Circuit] = {}

    def is_open(self, route: str) -> bool:
        circuit = self._circuits.get(route)
        return circuit is not None and circuit.open_until > self._clock()

    def record_hard_failure(self, route: str, kind: str) -> bool:
        """Count a hard failure; returns True when this one opened the circuit."""
        now = self._clock()
        circuit = self._circuits.setdefault(route, _Circuit())
        circuit.failures.append(now)
        circuit.last_kind = kind
        while circuit.failures and now - circuit.failures[0] > self.window_s:
            circuit.failures.popleft()
        if len(circuit.failures) < self.threshold or circuit.open_until > now:
            return False
        circuit.open_until = now + self.cooldown_s
        logger.info(
            "circuit opened for %s after %d hard failures (last: %s); skipping it for %.0fs",
            route,
            len(circuit.failures),
            kind,
            self.cooldown_s,
        )
        return True

    def record_success(self, route: str) -> None:
        # a working call proves the route; forget its failure history
        if self._circuits.pop(route, None) is not None:
            logger.debug("circuit for %s reset after a successful call", route)
