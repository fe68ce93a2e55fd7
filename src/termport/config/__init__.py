"""Configuration models and parser for termport.yaml."""

from termport.config.models import (
    HelperConfig,
    ProtocolConfig,
    TermportConfig,
    TimeoutConfig,
    TraceConfig,
)
from termport.config.parser import ConfigError, load_config, resolve_helper_path

__all__ = [
    "ConfigError",
    "HelperConfig",
    "ProtocolConfig",
    "TermportConfig",
    "TimeoutConfig",
    "TraceConfig",
    "load_config",
    "resolve_helper_path",
]
