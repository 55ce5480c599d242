"""
Configuration module for the alert engine.

Provides centralized settings loaded from the environment.
"""

from alert_engine.config.settings import AppSettings, get_settings

__all__ = ["AppSettings", "get_settings"]
