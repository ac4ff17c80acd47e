
from observability.phoenix_setup import init_phoenix_tracing
from observability.metrics import setup_prometheus_metrics

__all__ = [
    "init_phoenix_tracing",
    "setup_prometheus_metrics",
]
