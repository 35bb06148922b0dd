"""
Configuration templates and settings models for Poolkeeper.
"""

from .renderer import RenderedConfig, coerce, render
from .models import (
    ControllerSettings, ServerSettings, RouterSettings, HealthSettings, MetricsSettings,
    AutoscalerSettings, ProvisionerSettings, UpstreamSettings, PoolSettings, BackendSpec,
    parse_backend, parse_document, settings_from_rendered, load_settings
)

__all__ = [
    'RenderedConfig', 'coerce', 'render',
    'ControllerSettings', 'ServerSettings', 'RouterSettings', 'HealthSettings', 'MetricsSettings',
    'AutoscalerSettings', 'ProvisionerSettings', 'UpstreamSettings', 'PoolSettings', 'BackendSpec',
    'parse_backend', 'parse_document', 'settings_from_rendered', 'load_settings'
]
