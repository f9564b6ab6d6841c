"""
Health monitoring for the feed ranking pipeline

Components:
- healthMonitor: latency window, counters, threshold alerts and the monitoring wrapper
"""

from .healthMonitor import (
    AlertThresholds,
    HealthMetrics,
    HealthMonitor,
    run_alert_loop,
    with_monitoring
)

__all__ = [
    'AlertThresholds',
    'HealthMetrics',
    'HealthMonitor',
    'run_alert_loop',
    'with_monitoring'
]
