"""
Metrics collection and export for Poolkeeper.
"""

from .collector import MetricsCollector, MetricSample, PoolAggregate, RollingWindow, HttpStatsSource
from .exporter import MetricsExporter, CONTENT_TYPE

__all__ = ['MetricsCollector', 'MetricSample', 'PoolAggregate', 'RollingWindow', 'HttpStatsSource',
           'MetricsExporter', 'CONTENT_TYPE']
