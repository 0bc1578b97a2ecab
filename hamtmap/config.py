"""
hamtmap Configuration System

Configuration management with YAML files, environment variables,
schema validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (HAMTMAP_*)
    2. Runtime overrides
    3. Project config file (./hamtmap.yaml)
    4. Project config directory (./config/hamtmap.yaml)
    5. User config file (~/.hamtmap/config.yaml)
    6. Default values

Files are applied in reverse precedence order, so a later file overrides an
earlier one.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from hamtmap.hashing import DEFAULT_BIT_WIDTH, DEFAULT_BUCKET_SIZE, MAX_BIT_WIDTH, TrieOptions
from hamtmap.schema import CONFIG_SCHEMA, validate_with_schema

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
        except ValueError as e:
            raise ValidationError(f"{self.env_var}={value!r} is not a valid {target_type.__name__}") from e
        return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class TrieConfig:
    """Shape of newly built tries."""
    bit_width: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=DEFAULT_BIT_WIDTH,
        env_var="HAMTMAP_BIT_WIDTH",
        description="Hash bits consumed per trie level (slots per node = 2**bit_width)",
        validator=lambda x: isinstance(x, int) and 1 <= x <= MAX_BIT_WIDTH,
    ))
    bucket_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=DEFAULT_BUCKET_SIZE,
        env_var="HAMTMAP_BUCKET_SIZE",
        description="Maximum entries held inline in one slot before it splits",
        validator=lambda x: isinstance(x, int) and x >= 1,
    ))


@dataclass
class StoreConfig:
    """Configuration for the bundled stores."""
    root_dir: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=".hamtmap",
        env_var="HAMTMAP_STORE_DIR",
        description="Directory of the file store",
        validator=lambda x: bool(str(x).strip()),
    ))
    cache_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="HAMTMAP_CACHE_SIZE",
        description="Nodes kept by the read-through cache",
        validator=lambda x: isinstance(x, int) and x > 0,
    ))
    verify_reads: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="HAMTMAP_VERIFY_READS",
        description="Re-hash blobs read from the file store",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="HAMTMAP_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="HAMTMAP_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class HamtConfig:
    """
    Root configuration.

    Aggregates all component configurations.
    """
    trie: TrieConfig = field(default_factory=TrieConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False)

    def trie_options(self) -> TrieOptions:
        """Snapshot of the trie shape for the engine."""
        return TrieOptions(
            bit_width=self.trie.bit_width.get(),
            bucket_size=self.trie.bucket_size.get(),
        )


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = HamtConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[HamtConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> HamtConfig:
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file, validating it first."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        errors = validate_with_schema(data, CONFIG_SCHEMA)
        if errors:
            raise ConfigError(f"Invalid configuration in {path}: " + "; ".join(errors))

        self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files that exist; returns those loaded."""
        default_paths = [
            Path.home() / ".hamtmap" / "config.yaml",
            Path("config/hamtmap.yaml"),
            Path("hamtmap.yaml"),
        ]

        loaded = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any]) -> None:
            for key, value in values.items():
                if hasattr(config_obj, key):
                    attr = getattr(config_obj, key)
                    if isinstance(attr, ConfigValue):
                        attr.set(value)
                    elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                        apply_to_config(attr, value)

        apply_to_config(self._config, data)

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("trie.bucket_size", 4)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        if isinstance(value, str) and not isinstance(attr.default, str):
            value = attr._coerce(value)
        attr.set(value)
        for watcher in self._watchers:
            watcher(self._config)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("trie.bit_width")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[HamtConfig], None]) -> None:
        self._watchers.append(callback)

    def reset(self) -> None:
        """Drop runtime overrides and loaded files, returning to defaults."""
        self._config = HamtConfig()
        self._config_paths = []

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> HamtConfig:
    """Get the current configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()


def default_trie_options() -> TrieOptions:
    return get_config().trie_options()
