from .telemetry import TelemetryLogger

__all__ = ["TelemetryLogger"]
