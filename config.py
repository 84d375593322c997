"""
Configuration Management System for tlgstats

This module provides centralized configuration management for the library,
including analysis defaults, display formatting, logging configuration and
runtime options.

Usage:
    from config import CONFIG

    # Access config
    print(CONFIG.get('analysis.conf_level'))

    # Update config (runtime)
    CONFIG.update('analysis.coxreg_ties', 'breslow')

    # Get with default
    value = CONFIG.get('some.nested.key', default='default_value')
"""

import copy
import json
import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

VALID_TIES = ("efron", "breslow", "exact")
VALID_PVAL_METHODS = ("log-rank", "wald", "likelihood")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigManager:
    """
    Centralized configuration management with hierarchical key access.

    Supports:
    - Nested dictionary access with dot notation
    - Default values and fallbacks
    - Environment variable overrides
    - Config validation
    - Runtime updates
    """

    def __init__(self, config_dict: Optional[Dict] = None):
        """
        Create a ConfigManager populated with the given configuration or the module
        defaults and apply environment variable overrides.

        Parameters:
            config_dict (dict | None): Optional initial configuration dictionary to use
                instead of the built-in defaults.
        """
        self._config = config_dict or self._get_default_config()
        self._env_prefix = "TLGSTATS_"
        self._load_env_overrides()

    @staticmethod
    def _get_default_config() -> Dict[str, Any]:
        """
        Provide the default nested configuration used by the library.

        Returns:
            Dict[str, Any]: sections 'analysis', 'formatting', 'logging' and
            'performance' with their default settings.
        """
        return {

            # ========== ANALYSIS SETTINGS ==========
            "analysis": {
                "conf_level": 0.95,
                "label_all": "All Patients",

                # Pairwise Cox model used by the subgroup forest tables
                "coxph_ties": "efron",  # 'efron', 'breslow', 'exact'
                "coxph_pval_method": "log-rank",  # 'log-rank', 'wald', 'likelihood'

                # Cox regression summaries
                "coxreg_ties": "exact",
                "coxreg_pval_method": "wald",

                # Proportions / odds ratios
                "continuity_correction": 0.5,  # Haldane correction for zero cells
                "denom": "n",  # 'n', 'N', 'omit'
            },

            # ========== DISPLAY FORMATTING ==========
            "formatting": {
                "na_str": "NA",
                "pvalue_threshold": 0.0001,
                "pvalue_format_small": "<0.0001",
                "extreme_digits": 2,
            },

            # ========== LOGGING SETTINGS ==========
            "logging": {
                "enabled": True,
                "level": "INFO",  # DEBUG, INFO, WARNING, ERROR, CRITICAL
                "format": "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
                "date_format": "%Y-%m-%d %H:%M:%S",

                # File Logging
                "file_enabled": False,
                "log_dir": "logs",
                "log_file": "tlgstats.log",
                "max_log_size": 10485760,  # 10MB in bytes
                "backup_count": 5,

                # Console Logging
                "console_enabled": True,
                "console_level": "WARNING",

                # What to Log
                "log_analysis_operations": True,
                "log_performance": True,  # Timing information
            },

            # ========== PERFORMANCE SETTINGS ==========
            "performance": {
                "cache_thread_safe": True,
            },
        }

    @staticmethod
    def _coerce(current: Any, value: str) -> Any:
        """Convert an environment string to the type of the current setting."""
        if isinstance(current, bool):
            return value.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        return value

    def _load_env_overrides(self) -> None:
        """
        Apply configuration overrides from environment variables that start with the
        TLGSTATS_ prefix.

        Environment variables must follow the form TLGSTATS_<SECTION>_<KEY>=value; the
        first segment after the prefix is the section and the remaining segments are
        joined with underscores to form the key (e.g. TLGSTATS_ANALYSIS_CONF_LEVEL ->
        analysis.conf_level). Values are converted to the type of the default. Invalid
        overrides emit a warning and are skipped.
        """
        for key, value in os.environ.items():
            if not key.startswith(self._env_prefix):
                continue

            parts = key[len(self._env_prefix):].lower().split('_')
            if len(parts) < 2:
                continue

            dotted = f"{parts[0]}.{'_'.join(parts[1:])}"
            try:
                current = self.get(dotted)
                self.update(dotted, self._coerce(current, value))
            except (KeyError, ValueError, TypeError) as e:
                warnings.warn(f"Failed to set env override {key}={value}: {e}", stacklevel=2)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Retrieve a configuration value using a dot-separated key path.

        Parameters:
            key (str): Dot-separated path to a nested configuration value (e.g., "logging.level").
            default: Value to return if the specified path does not exist.

        Returns:
            The configuration value at the given path, or `default` if the path is not found.
        """
        value = self._config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def update(self, key: str, value: Any) -> None:
        """
        Set an existing configuration value identified by a dot-separated path.

        Raises:
            KeyError: If any intermediate path segment or the final key does not exist.
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                raise KeyError(f"Config path '{'.'.join(keys[:-1])}' does not exist")
            config = config[k]

        final_key = keys[-1]
        if final_key not in config:
            raise KeyError(f"Config key '{key}' does not exist")

        config[final_key] = value

    def set_nested(self, key: str, value: Any, create: bool = False) -> None:
        """
        Set a value using a dot-separated path, optionally creating missing
        intermediate dictionaries.
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                if create:
                    config[k] = {}
                else:
                    raise KeyError(f"Config path '{k}' does not exist")
            config = config[k]

        config[keys[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Return a deep copy of a top-level configuration section."""
        result = self.get(section, {})
        return copy.deepcopy(result) if isinstance(result, dict) else result

    def to_dict(self) -> Dict[str, Any]:
        """Get a deep copy of the entire configuration dictionary."""
        return copy.deepcopy(self._config)

    def to_json(self, filepath: Optional[str] = None, pretty: bool = True) -> str:
        """
        Serialize the current configuration to a JSON string, optionally writing it
        to `filepath`.
        """
        json_str = json.dumps(self._config, indent=2 if pretty else None)

        if filepath:
            Path(filepath).write_text(json_str)

        return json_str

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate key configuration constraints and collect any violations.

        Checks:
        - `analysis.conf_level` lies strictly between 0 and 1.
        - Ties and p-value method names are known.
        - `logging.level` is a standard level name.

        Returns:
            tuple: (is_valid, errors)
        """
        errors = []

        conf_level = self.get('analysis.conf_level')
        if conf_level is None or not (0 < conf_level < 1):
            errors.append("analysis.conf_level must be between 0 and 1")

        for key in ('analysis.coxph_ties', 'analysis.coxreg_ties'):
            if self.get(key) not in VALID_TIES:
                errors.append(f"{key} must be one of {list(VALID_TIES)}")

        for key in ('analysis.coxph_pval_method', 'analysis.coxreg_pval_method'):
            if self.get(key) not in VALID_PVAL_METHODS:
                errors.append(f"{key} must be one of {list(VALID_PVAL_METHODS)}")

        if self.get('logging.level') not in VALID_LOG_LEVELS:
            errors.append(f"logging.level must be one of {list(VALID_LOG_LEVELS)}")

        return len(errors) == 0, errors

    def __repr__(self) -> str:
        return f"ConfigManager({len(self._config)} sections)"


# Global config instance
CONFIG = ConfigManager()
