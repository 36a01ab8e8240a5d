from .registry import CIRCUIT_STATE_VALUES, MetricsRegistry, metrics_registry

__all__ = ["CIRCUIT_STATE_VALUES", "MetricsRegistry", "metrics_registry"]
