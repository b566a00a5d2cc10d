"""
docstate Configuration System

Configuration is declared once as typed ``ConfigValue`` entries, layered from
several sources, then resolved into a single frozen ``ClientSettings`` value
that is constructed at startup and passed to every component that needs it.
Nothing reads the environment after ``resolve()``.

Configuration Sources (in order of precedence):
    1. Environment variables (DOCSTATE_*)
    2. Runtime overrides (``ConfigManager.set``)
    3. YAML config file(s) (``ConfigManager.load_from_file``)
    4. Default values
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

import yaml

from docstate.errors import ConfigurationError

T = TypeVar("T")

NETWORKS = ("mainnet", "testnet", "devnet", "regtest")
SECURITY_LEVEL_NAMES = ("MASTER", "CRITICAL", "HIGH", "MEDIUM")


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
    secret: bool = False  # redacted in to_dict()
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self._check(value):
            raise ConfigurationError(f"Invalid value for config: {value!r}")
        self._value = value

    def _check(self, value: T) -> bool:
        try:
            return bool(self.validator(value))  # type: ignore[misc]
        except (TypeError, ValueError):
            return False

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)
        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            elif target_type == list:
                return [v.strip() for v in value.split(",") if v.strip()]  # type: ignore
            else:
                return value  # type: ignore
        except ValueError as ex:
            raise ConfigurationError(f"{self.env_var}: cannot parse {value!r} as {target_type.__name__}") from ex


@dataclass
class ConnectionConfig:
    """Platform transport endpoint and base-chain RPC credentials."""
    host: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="127.0.0.1",
        env_var="DOCSTATE_HOST",
        description="Platform node host address",
        validator=lambda x: isinstance(x, str) and bool(x.strip()),
    ))
    core_port: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=19998,
        env_var="DOCSTATE_CORE_PORT",
        description="Base-chain RPC port",
        validator=lambda x: 0 < int(x) <= 65535,
    ))
    platform_port: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1443,
        env_var="DOCSTATE_PLATFORM_PORT",
        description="Platform RPC port",
        validator=lambda x: 0 < int(x) <= 65535,
    ))
    core_user: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="dashmate",
        env_var="DOCSTATE_CORE_USER",
        description="Base-chain RPC username",
    ))
    core_password: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="DOCSTATE_CORE_PASSWORD",
        description="Base-chain RPC password",
        secret=True,
    ))
    network: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="testnet",
        env_var="DOCSTATE_NETWORK",
        description="Network the keys and endpoints belong to",
        validator=lambda x: x in NETWORKS,
    ))


@dataclass
class CacheConfig:
    """Bounded caches held by the platform context provider."""
    data_contracts_cache_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="DOCSTATE_DATA_CONTRACTS_CACHE_SIZE",
        description="Maximum cached data contracts",
        validator=lambda x: int(x) > 0,
    ))
    quorum_keys_cache_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="DOCSTATE_QUORUM_KEYS_CACHE_SIZE",
        description="Maximum cached quorum public keys",
        validator=lambda x: int(x) > 0,
    ))


@dataclass
class SubmissionConfig:
    """Broadcast, confirmation wait and retry bounds."""
    confirmation_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="DOCSTATE_CONFIRMATION_TIMEOUT",
        description="Maximum wait for a terminal transition result",
        validator=lambda x: float(x) > 0,
    ))
    poll_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="DOCSTATE_POLL_INTERVAL",
        description="Interval between confirmation polls",
        validator=lambda x: float(x) > 0,
    ))
    max_submit_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="DOCSTATE_MAX_SUBMIT_ATTEMPTS",
        description="Attempts per transition on network failure (1 = no retry)",
        validator=lambda x: int(x) >= 1,
    ))
    retry_base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="DOCSTATE_RETRY_BASE_DELAY",
        description="Base delay for exponential backoff between attempts",
        validator=lambda x: float(x) >= 0,
    ))


@dataclass
class DocumentConfig:
    """Document and signing defaults."""
    initial_revision: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="DOCSTATE_INITIAL_REVISION",
        description="Revision stamped on newly created documents",
        validator=lambda x: int(x) >= 0,
    ))
    signing_security_levels: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=["HIGH", "CRITICAL"],
        env_var="DOCSTATE_SIGNING_SECURITY_LEVELS",
        description="Security levels acceptable for document transition keys",
        validator=lambda x: bool(x) and all(str(v).upper() in SECURITY_LEVEL_NAMES for v in x),
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="DOCSTATE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="DOCSTATE_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class DocStateConfig:
    """Root configuration declaration."""
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    document: DocumentConfig = field(default_factory=DocumentConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


@dataclass(frozen=True)
class ClientSettings:
    """Immutable snapshot of resolved configuration."""
    host: str = "127.0.0.1"
    core_port: int = 19998
    platform_port: int = 1443
    core_user: str = "dashmate"
    core_password: str = field(default="", repr=False)
    network: str = "testnet"
    data_contracts_cache_size: int = 100
    quorum_keys_cache_size: int = 100
    confirmation_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    max_submit_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    initial_revision: int = 1
    signing_security_levels: Tuple[str, ...] = ("HIGH", "CRITICAL")
    log_level: str = "info"
    log_format: str = "json"

    @property
    def platform_uri(self) -> str:
        return f"http://{self.host}:{self.platform_port}"

    @property
    def core_uri(self) -> str:
        return f"http://{self.host}:{self.core_port}"

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = list(value)
            out[f.name] = value
        if redact and out.get("core_password"):
            out["core_password"] = "***"
        return out


_SETTINGS_PATHS: Dict[str, str] = {
    "host": "connection.host",
    "core_port": "connection.core_port",
    "platform_port": "connection.platform_port",
    "core_user": "connection.core_user",
    "core_password": "connection.core_password",
    "network": "connection.network",
    "data_contracts_cache_size": "cache.data_contracts_cache_size",
    "quorum_keys_cache_size": "cache.quorum_keys_cache_size",
    "confirmation_timeout_seconds": "submission.confirmation_timeout_seconds",
    "poll_interval_seconds": "submission.poll_interval_seconds",
    "max_submit_attempts": "submission.max_submit_attempts",
    "retry_base_delay_seconds": "submission.retry_base_delay_seconds",
    "initial_revision": "document.initial_revision",
    "signing_security_levels": "document.signing_security_levels",
    "log_level": "observability.log_level",
    "log_format": "observability.log_format",
}


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    One instance per process start-up; ``resolve()`` hands out the frozen
    settings that the rest of the library consumes.
    """

    def __init__(self) -> None:
        self._config = DocStateConfig()
        self._config_paths: List[Path] = []

    @property
    def config(self) -> DocStateConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as ex:
            raise ConfigurationError(f"Configuration file is not valid YAML: {path}: {ex}") from ex

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
        self.load_dict(data)
        self._config_paths.append(path)

    def load_dict(self, data: Dict[str, Any]) -> None:
        """Apply nested section values, e.g. ``{"connection": {"host": "10.0.0.2"}}``."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}{key}"
                if not hasattr(config_obj, key):
                    raise ConfigurationError(f"Unknown configuration key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{path}.")
                else:
                    raise ConfigurationError(f"Invalid configuration section: {path}")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("submission.max_submit_attempts", 5)
        """
        attr = self._lookup(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigurationError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        attr = self._lookup(path)
        if isinstance(attr, ConfigValue):
            return attr.get()
        return attr

    def _lookup(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigurationError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
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
                    if obj.validator and not obj._check(value):
                        shown = "***" if obj.secret else value
                        errors.append(f"{path}: validation failed for value {shown!r}")
                except ConfigurationError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def resolve(self) -> ClientSettings:
        """Validate every value and freeze them into ``ClientSettings``."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("invalid configuration: " + "; ".join(errors))

        values: Dict[str, Any] = {name: self.get(path) for name, path in _SETTINGS_PATHS.items()}
        values["core_port"] = int(values["core_port"])
        values["platform_port"] = int(values["platform_port"])
        values["data_contracts_cache_size"] = int(values["data_contracts_cache_size"])
        values["quorum_keys_cache_size"] = int(values["quorum_keys_cache_size"])
        values["confirmation_timeout_seconds"] = float(values["confirmation_timeout_seconds"])
        values["poll_interval_seconds"] = float(values["poll_interval_seconds"])
        values["max_submit_attempts"] = int(values["max_submit_attempts"])
        values["retry_base_delay_seconds"] = float(values["retry_base_delay_seconds"])
        values["initial_revision"] = int(values["initial_revision"])
        values["signing_security_levels"] = tuple(str(v).upper() for v in values["signing_security_levels"])
        return ClientSettings(**values)

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = "***" if obj.secret else str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def load_settings(path: Optional[Union[str, Path]] = None) -> ClientSettings:
    """Build settings from defaults, an optional YAML file and the environment."""
    manager = ConfigManager()
    if path is not None:
        manager.load_from_file(path)
    return manager.resolve()
