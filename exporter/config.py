"""
Configuration management for the metrics exporter.

This module provides the ExporterConfig dataclass and helpers for loading it
from YAML files, environment variables, or programmatically.

Precedence (lowest to highest):
    dataclass defaults -> YAML file -> environment variables -> explicit overrides
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from loguru import logger

from .plugins.loader import RemovalPolicy
from .refresh import RefreshPolicy


# Environment variable -> (config field, converter)
ENV_OVERRIDES = {
    "HOST": ("host", str),
    "PORT": ("port", int),
    "PLUGIN_DIR": ("plugin_dir", str),
    "REFRESH_POLICY": ("refresh_policy", str),
    "REFRESH_INTERVAL_MS": ("refresh_interval_ms", int),
    "PLUGIN_TIMEOUT_SECONDS": ("plugin_timeout_seconds", float),
    "ON_REMOVE": ("on_remove", str),
}


@dataclass
class ExporterConfig:
    """
    Complete configuration of the exporter process.

    Attributes:
        host: Interface the HTTP server binds to
        port: HTTP port (the only fatal startup failure is failing to bind it)
        plugin_dir: Directory holding plugin files
        plugin_extension: Source extension of eligible plugin files
        export_name: Module attribute each plugin exports
        refresh_policy: "interval" or "on_request"
        refresh_interval_ms: Period of the interval policy
        plugin_timeout_seconds: Bound on one plugin's apply per cycle
        concurrent_refresh: Apply plugins of one cycle concurrently
        on_remove: "keep" or "unregister" for deleted plugin files
        default_metrics: Serve process/platform/GC metrics on /default-metrics
        watch_debounce_ms: Debounce window of the directory watcher
        watch_force_polling: Poll the directory instead of native notifications
        logging: Logging configuration (level, file, format)
    """
    host: str = "0.0.0.0"
    port: int = 3000
    plugin_dir: str = "./metrics"
    plugin_extension: str = ".py"
    export_name: str = "provider"
    refresh_policy: str = RefreshPolicy.INTERVAL.value
    refresh_interval_ms: int = 10000
    plugin_timeout_seconds: float = 30.0
    concurrent_refresh: bool = False
    on_remove: str = RemovalPolicy.KEEP.value
    default_metrics: bool = True
    watch_debounce_ms: int = 1600
    watch_force_polling: bool = False
    logging: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.port <= 0 or self.port > 65535:
            raise ValueError(f"Invalid port: {self.port}")
        if self.refresh_interval_ms <= 0:
            raise ValueError(f"refresh_interval_ms must be positive, got {self.refresh_interval_ms}")
        if self.plugin_timeout_seconds <= 0:
            raise ValueError(
                f"plugin_timeout_seconds must be positive, got {self.plugin_timeout_seconds}"
            )
        if not self.export_name:
            raise ValueError("export_name cannot be empty")

        try:
            self.refresh_policy = RefreshPolicy(self.refresh_policy).value
        except ValueError:
            raise ValueError(
                f"Unknown refresh_policy '{self.refresh_policy}', "
                f"expected one of {[p.value for p in RefreshPolicy]}"
            )
        try:
            self.on_remove = RemovalPolicy(self.on_remove).value
        except ValueError:
            raise ValueError(
                f"Unknown on_remove policy '{self.on_remove}', "
                f"expected one of {[p.value for p in RemovalPolicy]}"
            )

        # Set default logging parameters if not provided
        defaults = {"level": "INFO", "file": None, "format": "text"}
        self.logging = {**defaults, **(self.logging or {})}

    @property
    def refresh_interval(self) -> float:
        """Refresh interval in seconds."""
        return self.refresh_interval_ms / 1000.0

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "ExporterConfig":
        """
        Load configuration from a YAML file.

        Keys may sit at the top level or under an `exporter_config` section.
        Unknown keys are logged and ignored.

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            ExporterConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is malformed
        """
        log = logger.bind(context="ExporterConfig.from_yaml")
        log.info(f"Loading exporter configuration from {yaml_path}")

        config_file = Path(yaml_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        if "exporter_config" in config_data:
            config_data = config_data["exporter_config"] or {}

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_dict: Mapping[str, Any]) -> "ExporterConfig":
        """
        Create configuration from a dictionary, dropping unknown keys.

        Args:
            config_dict: Configuration dictionary

        Returns:
            ExporterConfig instance
        """
        known_fields = {f.name for f in fields(cls)}
        params = {}
        for key, value in config_dict.items():
            if key in known_fields:
                params[key] = value
            else:
                logger.warning(f"Unknown configuration parameter: {key}")
        return cls(**params)

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> "ExporterConfig":
        """
        Apply environment variable overrides (PORT, PLUGIN_DIR, ...).

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            self, for chaining

        Raises:
            ValueError: If a variable holds an invalid value
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for variable, (name, convert) in ENV_OVERRIDES.items():
            raw = environ.get(variable)
            if raw is None or raw == "":
                continue
            try:
                overrides[name] = convert(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {variable}: {raw!r}")

        if environ.get("LOG_LEVEL"):
            overrides["logging"] = {**self.logging, "level": environ["LOG_LEVEL"].upper()}

        if overrides:
            self.update(**overrides)
        return self

    def to_yaml(self, yaml_path: str):
        """
        Save configuration to a YAML file.

        Args:
            yaml_path: Path to save YAML file
        """
        log = logger.bind(context="ExporterConfig.to_yaml")
        log.info(f"Saving configuration to {yaml_path}")

        config_file = Path(yaml_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w') as f:
            yaml.safe_dump({"exporter_config": self.to_dict()}, f, default_flow_style=False)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        return asdict(self)

    def update(self, **kwargs):
        """
        Update configuration parameters and re-validate.

        Args:
            **kwargs: Parameters to update
        """
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                logger.warning(f"Unknown configuration parameter: {key}")
        self.__post_init__()


def load_config(
    yaml_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides,
) -> ExporterConfig:
    """
    Build the effective configuration.

    Args:
        yaml_path: Optional YAML configuration file
        environ: Environment mapping, defaults to os.environ
        **overrides: Explicit values (e.g. from the command line), None values ignored

    Returns:
        ExporterConfig with every layer applied
    """
    config = ExporterConfig.from_yaml(yaml_path) if yaml_path else ExporterConfig()
    config.apply_env(environ)
    explicit = {key: value for key, value in overrides.items() if value is not None}
    if explicit:
        config.update(**explicit)
    return config
