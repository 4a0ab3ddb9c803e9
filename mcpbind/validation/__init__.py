"""
mcpbind validation module.

This module provides host configuration loading and schema enforcement.
"""

from mcpbind.validation.config import BindingSettings, Config, HostDescriptor, substitute_env

__all__ = ["BindingSettings", "Config", "HostDescriptor", "substitute_env"]
