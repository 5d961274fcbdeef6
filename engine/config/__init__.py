"""
Config Module

YAML + environment configuration loading and validation.
"""

from .loader import (
    AggregatorConfig,
    ConfigLoader,
    RollupConfig,
    SchedulerConfig,
    ServiceConfig,
    StoreConfig,
)

__all__ = [
    "ConfigLoader",
    "ServiceConfig",
    "StoreConfig",
    "AggregatorConfig",
    "RollupConfig",
    "SchedulerConfig",
]
