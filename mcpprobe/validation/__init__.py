"""
mcpprobe validation module.

This module provides configuration validation and schema enforcement.
"""

from mcpprobe.validation.config import Config, ConfigError, ProbeConfig, VerifierSettings

__all__ = ["Config", "ConfigError", "ProbeConfig", "VerifierSettings"]
