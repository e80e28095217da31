from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CallMetric:
    route: str
    elapsed: float
    outcome: str  # success | error
    error_kind: Optional[str] = None
    first_chunk_latency: Optional[float] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class ProviderMetricsCollector:
    """Collects per-call metrics for one session's provider invocations."""

    calls: List[CallMetric] = field(default_factory=list)
    retries: List[Dict[str, Any]] = field(default_factory=list)
    fallbacks: List[Dict[str, Any]] = field(default_factory=list)
    circuit_skips: List[str] = field(default_factory=list)
    anomalies: List[Dict[str, Any]] = field(default_factory=list)

    def reset(self) -> None:
        self.calls.clear()
        self.retries.clear()
        self.fallbacks.clear()
        self.circuit_skips.clear()
        self.anomalies.clear()

    def add_call(
        self,
        route: str,
        *,
        elapsed: float,
        outcome: str,
        error_kind: Optional[str] = None,
        first_chunk_latency: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.calls.append(
            CallMetric(
                route=route,
                elapsed=elapsed,
                outcome=outcome,
                error_kind=error_kind,
                first_chunk_latency=first_chunk_latency,
                details=details,
            )
        )

    def add_retry(self, *, route: str, error_class: str, delay_ms: int, attempt: int) -> None:
        self.retries.append(
            {
                "route": route,
                "error_class": error_class,
                "delay_ms": delay_ms,
                "attempt": attempt,
            }
        )

    def add_fallback(self, *, primary: str, fallback: str, reason: str) -> None:
        self.fallbacks.append(
            {
                "from": primary,
                "to": fallback,
                "reason": reason,
            }
        )

    def add_circuit_skip(self, route: str) -> None:
        self.circuit_skips.append(route)

    def add_anomaly(self, *, route: str, requested_model_id: str, responded_model_id: Optional[str]) -> None:
        self.anomalies.append(
            {
                "route": route,
                "requested_model_id": requested_model_id,
                "responded_model_id": responded_model_id,
            }
        )

    def _aggregate_routes(self) -> Dict[str, Dict[str, Any]]:
        routes: Dict[str, Dict[str, Any]] = {}
        for call in self.calls:
            entry = routes.setdefault(
                call.route,
                {
                    "calls": 0,
                    "success": 0,
                    "errors": 0,
                    "latency_sum": 0.0,
                    "latency_max": 0.0,
                    "error_kinds": {},
                },
            )
            entry["calls"] += 1
            entry["latency_sum"] += call.elapsed
            entry["latency_max"] = max(entry["latency_max"], call.elapsed)
            if call.outcome == "success":
                entry["success"] += 1
            else:
                entry["errors"] += 1
                kind = call.error_kind or "unknown"
                entry["error_kinds"][kind] = entry["error_kinds"].get(kind, 0) + 1
        for entry in routes.values():
            calls = entry["calls"] or 1
            entry["latency_avg"] = entry["latency_sum"] / calls
        return routes

    def snapshot(self) -> Dict[str, Any]:
        routes = self._aggregate_routes()
        total_calls = len(self.calls)
        total_success = sum(1 for call in self.calls if call.outcome == "success")

        return {
            "summary": {
                "calls": total_calls,
                "success": total_success,
                "errors": total_calls - total_success,
                "retries": len(self.retries),
                "fallbacks": len(self.fallbacks),
                "circuit_skips": len(self.circuit_skips),
                "anomalies": len(self.anomalies),
            },
            "routes": routes,
            "retries": list(self.retries),
            "fallbacks": list(self.fallbacks),
            "circuit_skips": list(self.circuit_skips),
            "anomalies": list(self.anomalies),
        }
