"""
Prometheus-style metrics for the live scoring loop and the websocket stream.

Simple in-memory counters and gauges, reset on restart.
"""

from typing import Dict, Tuple
from datetime import datetime

_METRICS: Dict[str, int] = {
    "scoring_cycles_total": 0,
    "scoring_cycle_errors_total": 0,
    "scoring_cycles_skipped_total": 0,
    "scoring_unit_failures_total": 0,  # Per (contest, stock) / (team, stock) savepoint rollbacks
    "teams_updated_total": 0,
    "contests_settled_total": 0,
    "settlement_errors_total": 0,
    "screener_stocks_scored_total": 0,
    "daily_resets_total": 0,
    "ws_connections": 0,  # gauge
    "ws_disconnects_total": 0,
}

_METRIC_HELP: Dict[str, Tuple[str, str]] = {
    "scoring_cycles_total": ("counter", "Total number of completed scoring cycles"),
    "scoring_cycle_errors_total": ("counter", "Total number of scoring cycles that failed"),
    "scoring_cycles_skipped_total": ("counter", "Total number of cycles skipped (overlap or open breaker)"),
    "scoring_unit_failures_total": ("counter", "Total number of scoring units rolled back"),
    "teams_updated_total": ("counter", "Total number of team point updates applied"),
    "contests_settled_total": ("counter", "Total number of contests settled"),
    "settlement_errors_total": ("counter", "Total number of failed contest settlements"),
    "screener_stocks_scored_total": ("counter", "Total number of daily screener stock updates"),
    "daily_resets_total": ("counter", "Total number of daily screener resets"),
    "ws_connections": ("gauge", "Current number of WebSocket connections"),
    "ws_disconnects_total": ("counter", "Total number of WebSocket disconnects"),
}

_LABELED_METRICS: Dict[str, Dict[str, int]] = {
    "ws_messages_sent_total": {},  # type=stock.update|heartbeat
}

_START_TIME = datetime.utcnow()


def increment_metric(metric_name: str, value: int = 1):
    """Increment a metric counter."""
    if metric_name in _METRICS:
        _METRICS[metric_name] += value


def increment_counter(metric_name: str, labels: Dict[str, str] = None, value: int = 1):
    """
    Increment a counter with optional labels.

    Args:
        metric_name: Name of the metric to increment
        labels: Optional dictionary of label key-value pairs
        value: Amount to increment by (default 1)
    """
    if metric_name in _METRICS:
        _METRICS[metric_name] += value
    elif metric_name in _LABELED_METRICS:
        if labels:
            label_key = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
            if label_key not in _LABELED_METRICS[metric_name]:
                _LABELED_METRICS[metric_name][label_key] = 0
            _LABELED_METRICS[metric_name][label_key] += value


def get_metrics() -> Dict[str, int]:
    """Get current metric values."""
    return _METRICS.copy()


def reset_metrics():
    """Zero every metric (tests)."""
    for name in _METRICS:
        _METRICS[name] = 0
    for values in _LABELED_METRICS.values():
        values.clear()


def get_metrics_text() -> str:
    """
    Get metrics in Prometheus text format.

    Returns:
        str: Prometheus-formatted metrics
    """
    uptime_seconds = int((datetime.utcnow() - _START_TIME).total_seconds())

    lines = []
    for name, value in _METRICS.items():
        metric_type, help_text = _METRIC_HELP[name]
        lines.extend([
            f"# HELP {name} {help_text}",
            f"# TYPE {name} {metric_type}",
            f"{name} {value}",
            "",
        ])

    lines.extend([
        "# HELP ws_messages_sent_total Total number of WebSocket messages sent by type",
        "# TYPE ws_messages_sent_total counter",
    ])
    if _LABELED_METRICS["ws_messages_sent_total"]:
        for label_str, count in _LABELED_METRICS["ws_messages_sent_total"].items():
            lines.append(f"ws_messages_sent_total{{{label_str}}} {count}")
    else:
        lines.append("ws_messages_sent_total 0")

    lines.extend([
        "",
        "# HELP api_uptime_seconds API uptime in seconds",
        "# TYPE api_uptime_seconds gauge",
        f"api_uptime_seconds {uptime_seconds}",
        "",
    ])

    return "\n".join(lines)
