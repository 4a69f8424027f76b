"""
Settings management module for agent-sync.

This module provides configuration management including:
- Settings data models (AuthMode, RetryConfig, SyncSettings)
- YAML-based configuration storage with environment overrides
- Secure storage of the API key and SSO cookies using keyring
"""

from .models import AuthMode, RetryConfig, SyncSettings
from .storage import SettingsStorage

__all__ = [
    # Models
    "AuthMode",
    "RetryConfig",
    "SyncSettings",
    # Storage
    "SettingsStorage",
]
