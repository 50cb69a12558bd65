"""
Whitelist Configuration System

Configuration management with YAML files, environment variables and
validation.

Configuration Sources (in order of precedence):
    1. Environment variables (WHITELIST_*, ADMIN_PRIVATE_KEY, OWNER_PRIVATE_KEY)
    2. Runtime overrides (``ConfigManager.set``)
    3. User config file (~/.sealkit/whitelist.yaml)
    4. Project config file (./whitelist.yaml)
    5. Default values

Private keys are marked secret and are masked in every export.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from sealkit.whitelist.errors import TaxonomyVersion
from sealkit.whitelist.hardening import U64_MAX, Validators
from sealkit.whitelist.observability import LOG_FORMATS, LOG_LEVELS, WhitelistLayer, get_logger

T = TypeVar("T")

SECRET_MASK = "********"

DEFAULT_PACKAGE_ID = "0x" + "0" * 63 + "a"


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Return the effective value; environment values are validated on read."""
        if self.env_var and self.env_var in os.environ:
            raw = os.environ[self.env_var]
            shown = SECRET_MASK if self.secret else repr(raw)
            try:
                value = self._coerce(raw)
            except ValueError:
                raise ConfigValidationError(f"Invalid value for {self.env_var}: {shown}") from None
            if self.validator and not self.validator(value):
                raise ConfigValidationError(f"Invalid value for {self.env_var}: {shown}")
            return value
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str) and self.default is not None:
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def display(self) -> Any:
        value = self.get()
        if self.secret and value:
            return SECRET_MASK
        return value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore


def _is_address(value: str) -> bool:
    return Validators.validate_address(value).is_valid


@dataclass
class LedgerConfig:
    """Where the whitelist module lives and where ledger state is kept."""
    package_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=DEFAULT_PACKAGE_ID,
        env_var="WHITELIST_PACKAGE_ID",
        description="Package id the whitelist module is published at",
        validator=_is_address,
    ))
    state_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="whitelist-ledger.json",
        env_var="WHITELIST_STATE_PATH",
        description="JSON file holding the persisted ledger snapshot",
        validator=lambda x: bool(x),
    ))


@dataclass
class ClientConfig:
    """Transaction submission settings."""
    gas_budget: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10000000,
        env_var="WHITELIST_GAS_BUDGET",
        description="Gas budget attached to every transaction",
        validator=lambda x: 0 < x <= U64_MAX,
    ))
    settle_delay_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="WHITELIST_SETTLE_DELAY_MS",
        description="Milliseconds to wait after a successful execution",
        validator=lambda x: 0 <= x <= 60000,
    ))
    error_taxonomy: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=TaxonomyVersion.V2.value,
        env_var="WHITELIST_ERROR_TAXONOMY",
        description="Abort-code taxonomy used to decode failures (v1, v2)",
        validator=lambda x: x in [v.value for v in TaxonomyVersion],
    ))


@dataclass
class KeysConfig:
    """Signing keys (hex or base64 Ed25519 secret keys)."""
    admin_private_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="ADMIN_PRIVATE_KEY",
        description="Secret key of the admin / deployer account",
        secret=True,
    ))
    owner_private_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="OWNER_PRIVATE_KEY",
        description="Secret key of the whitelist owner account",
        secret=True,
    ))


@dataclass
class LoggingConfig:
    level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="WHITELIST_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="WHITELIST_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in LOG_FORMATS,
    ))


@dataclass
class WhitelistConfig:
    """
    Root configuration.

    Aggregates all section configurations and provides export helpers.
    """
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    keys: KeysConfig = field(default_factory=KeysConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self, reveal_secrets: bool = False) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get() if reveal_secrets else obj.display()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string (secrets masked)."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


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

        self._config = WhitelistConfig()
        self._config_paths: List[Path] = []
        self._logger = get_logger("config", WhitelistLayer.CONFIG)
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> WhitelistConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must be a mapping: {path}")
        self._apply_dict(data)
        self._config_paths.append(path)
        self._logger.info("Loaded configuration file", operation="load_config", path=str(path))

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path.home() / ".sealkit" / "whitelist.yaml",
            Path("whitelist.yaml"),
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    self._logger.warning(
                        "Ignoring unreadable default configuration",
                        operation="load_defaults",
                        path=str(path),
                        error=str(e),
                    )

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}{key}"
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{path}.")
                else:
                    raise ConfigError(f"Configuration section {path} must be a mapping")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, "__dataclass_fields__") or part not in obj.__dataclass_fields__:
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("client.gas_budget", 5000000)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("client.settle_delay_ms")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def display(self, path: str) -> Any:
        """Like ``get``, but secrets are masked."""
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.display()
        return obj

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
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    shown = SECRET_MASK if obj.secret else value
                    errors.append(f"{path}: validation failed for value {shown!r}")
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
                properties["default"] = SECRET_MASK if obj.secret and obj.default else str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
                if obj.secret:
                    properties["secret"] = True
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> WhitelistConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
