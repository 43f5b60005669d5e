"""
Utility Functions Module

Common utilities used across the drift registration project:
- Logging setup
- Typed YAML configuration
"""

from .logging import setup_logger, configure_logging
from .config import (
    AppConfig,
    IndexConfig,
    SVDConfig,
    EstimatorConfig,
    LoopConfig,
    LoggingConfig,
    load_config,
)

__all__ = [
    "setup_logger",
    "configure_logging",
    "AppConfig",
    "IndexConfig",
    "SVDConfig",
    "EstimatorConfig",
    "LoopConfig",
    "LoggingConfig",
    "load_config",
]
