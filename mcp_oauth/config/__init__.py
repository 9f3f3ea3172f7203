"""
Configuration Module for the OAuth authorization core

Provides pydantic configuration for both deployment modes:
- In-process credential store (single process, tests)
- Shared Redis credential store (multiple processes)
"""

from .oauth_config import (
    OAuthConfig,
    RedisConfig,
    MemoryStoreConfig,
    TokenPolicyConfig,
    LoggingConfig,
    get_oauth_config,
    get_development_config,
    get_production_config,
)
from .logging_config import configure_logging

__all__ = [
    'OAuthConfig',
    'RedisConfig',
    'MemoryStoreConfig',
    'TokenPolicyConfig',
    'LoggingConfig',
    'get_oauth_config',
    'get_development_config',
    'get_production_config',
    'configure_logging'
]
