"""
Bountiful Configuration System

Configuration with YAML files, environment variables and validation.

Configuration Sources (in order of precedence):
    1. Environment variables (BOUNTIFUL_*)
    2. Runtime overrides (ConfigManager.set)
    3. User config file (~/.bountiful/config.yaml)
    4. Project config files (./bountiful.yaml, ./config/bountiful.yaml)
    5. Default values

Example ``bountiful.yaml``:

    network:
      network: testnet
    fees:
      dev_fee_rate: 10
    distribution:
      recipients:
        - "9f...:32"
        - "9g...:32"
        - "9e...:32"
        - "9h...:4"
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import yaml

from bountiful.core import load_yaml
from bountiful.distribution import MIN_DISTRIBUTION, SHARE_DENOMINATOR, FeeSchedule
from bountiful.errors import ConfigError
from bountiful.fees import FEE_DENOMINATOR, MIN_BOX_VALUE, RECOMMENDED_TX_FEE, SAFE_MIN_BOX_VALUE
from bountiful.keys import Network, proposition_of
from bountiful.observability import BountyLayer, get_logger
from bountiful.versions import LATEST_VERSION, ContractVersion

T = TypeVar("T")

logger = get_logger("config", BountyLayer.CONFIG)


class ValidationError(ConfigError):
    """A configuration value was refused by its validator."""

    code = "config_validation_error"


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


_ENV_PARSERS: Dict[type, Callable[[str], Any]] = {
    bool: _parse_bool,
    int: int,
    float: float,
    list: _parse_list,
    str: str,
}


@dataclass
class ConfigValue(Generic[T]):
    """
    One setting: a default, an optional BOUNTIFUL_* variable that overrides
    everything else, a validator and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    @property
    def kind(self) -> type:
        return type(self.default)

    def get(self) -> T:
        raw = os.environ.get(self.env_var) if self.env_var else None
        if raw is not None:
            return self._from_env(raw)
        return self.default if self._value is None else self._value

    def set(self, value: T) -> None:
        if self.validator is not None and not self.validator(value):
            raise ValidationError(f"refused value {value!r}", env_var=self.env_var)
        previous, self._value = self._value, value
        for callback in self._callbacks:
            callback(previous, value)

    def reset(self) -> None:
        self._value = None

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        self._callbacks.append(callback)

    def _from_env(self, raw: str) -> T:
        parse = _ENV_PARSERS.get(self.kind, str)
        try:
            return parse(raw)
        except ValueError as e:
            raise ValidationError(
                f"{self.env_var}={raw!r} is not a valid {self.kind.__name__}", env_var=self.env_var,
            ) from e


def _is_address_or_empty(value: str) -> bool:
    return value == "" or bool(proposition_of(value))


def _setting(default: Any, env: str, description: str, validator: Optional[Callable[[Any], bool]] = None) -> Any:
    return field(default_factory=lambda: ConfigValue(
        default=default, env_var=f"BOUNTIFUL_{env}", description=description, validator=validator,
    ))


@dataclass
class NetworkConfig:
    """Which ledger network addresses are rendered for."""
    network: ConfigValue[str] = _setting(
        "mainnet", "NETWORK", "Ledger network (mainnet, testnet)",
        lambda x: x in {n.value for n in Network},
    )


@dataclass
class FeeConfig:
    """Platform fee constants baked into new bounty scripts."""
    dev_fee_address: ConfigValue[str] = _setting(
        "", "DEV_FEE_ADDRESS", "Address collecting platform fees (empty: the distribution script)",
        _is_address_or_empty,
    )
    dev_fee_rate: ConfigValue[int] = _setting(
        10, "DEV_FEE_RATE", f"Platform fee in 1/{FEE_DENOMINATOR} of the reward (10 = 1%)",
        lambda x: 0 <= x < FEE_DENOMINATOR,
    )
    min_box_value: ConfigValue[int] = _setting(
        MIN_BOX_VALUE, "MIN_BOX_VALUE", "Dust threshold for any output", lambda x: x > 0,
    )
    carrying_value: ConfigValue[int] = _setting(
        SAFE_MIN_BOX_VALUE, "CARRYING_VALUE", "Value deposited in a bounty box on top of its reward",
        lambda x: x >= MIN_BOX_VALUE,
    )
    tx_fee: ConfigValue[int] = _setting(
        RECOMMENDED_TX_FEE, "TX_FEE", "Fee paid by non-terminal transitions", lambda x: x > 0,
    )


@dataclass
class LifecycleConfig:
    """Orchestrator behaviour."""
    default_version: ConfigValue[str] = _setting(
        LATEST_VERSION.value, "CONTRACT_VERSION", "Contract version used for new bounties",
        lambda x: x in {v.value for v in ContractVersion},
    )
    await_confirmation: ConfigValue[bool] = _setting(
        True, "AWAIT_CONFIRMATION", "Wait for each transition to confirm before returning",
    )
    confirmation_timeout: ConfigValue[float] = _setting(
        600.0, "CONFIRMATION_TIMEOUT", "Seconds to wait for a confirmation", lambda x: x >= 0,
    )


@dataclass
class DistributionConfig:
    """Stakeholder split of collected platform fees."""
    recipients: ConfigValue[list] = _setting([], "FEE_RECIPIENTS", "Recipients as address:share entries")
    denominator: ConfigValue[int] = _setting(
        SHARE_DENOMINATOR, "FEE_DENOMINATOR", "Denominator the shares must sum to", lambda x: x > 0,
    )
    min_distribution: ConfigValue[int] = _setting(
        MIN_DISTRIBUTION, "MIN_DISTRIBUTION", "Smallest fee total worth distributing", lambda x: x > 0,
    )


@dataclass
class ObservabilityConfig:
    """Log output of the CLI and of embedding applications."""
    log_level: ConfigValue[str] = _setting(
        "info", "LOG_LEVEL", "Log level (debug, info, warning, error, critical)",
        lambda x: x in ("debug", "info", "warning", "error", "critical"),
    )
    log_format: ConfigValue[str] = _setting(
        "json", "LOG_FORMAT", "Log format (json, text)", lambda x: x in ("json", "text"),
    )


def _walk(section: Any, prefix: str = "") -> Iterator[Tuple[str, ConfigValue]]:
    """Yield (dotted path, value) for every setting below ``section``."""
    for f in fields(section):
        child = getattr(section, f.name)
        path = f"{prefix}{f.name}"
        if isinstance(child, ConfigValue):
            yield path, child
        elif is_dataclass(child):
            yield from _walk(child, path + ".")


@dataclass
class BountifulConfig:
    """Root configuration."""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    distribution: DistributionConfig = field(default_factory=DistributionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @property
    def ledger_network(self) -> Network:
        return Network(self.network.network.get())

    @property
    def contract_version(self) -> ContractVersion:
        return ContractVersion.parse(self.lifecycle.default_version.get())

    def fee_schedule(self) -> Optional[FeeSchedule]:
        """The configured stakeholder schedule, or None when no recipients are set.

        Raises ConfigError when the shares do not sum to the denominator.
        """
        entries = self.distribution.recipients.get()
        if not entries:
            return None
        return FeeSchedule.parse(entries, self.distribution.denominator.get())

    def dev_fee_address(self) -> str:
        """Explicit dev fee address, else the distribution script's address."""
        explicit = self.fees.dev_fee_address.get()
        if explicit:
            return explicit
        schedule = self.fee_schedule()
        if schedule is None:
            raise ConfigError("no dev fee address: set fees.dev_fee_address or distribution.recipients")
        return schedule.script(
            min_distribution=self.distribution.min_distribution.get(),
        ).address(self.ledger_network)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for path, value in _walk(self):
            *sections, leaf = path.split(".")
            node = out
            for s in sections:
                node = node.setdefault(s, {})
            node[leaf] = value.get()
        return out

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


class ConfigManager:
    """
    Process-wide owner of the BountifulConfig.

    A lock-guarded singleton: every ``ConfigManager()`` is the same object
    until ``reset`` drops it. Remembers which files were loaded so ``reload``
    can re-read them and notify watchers.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._config = BountifulConfig()
                instance._paths = []
                instance._watchers = []
                cls._instance = instance
            return cls._instance

    _config: BountifulConfig
    _paths: List[Path]
    _watchers: List[Callable[[BountifulConfig], None]]

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests and CLI invocations start fresh)."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> BountifulConfig:
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._paths)

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def load_from_file(self, path: Union[str, Path]) -> None:
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            data = load_yaml(path)
        except yaml.YAMLError as e:
            raise ConfigError(f"Configuration file {path} is not valid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {path} must hold a mapping")
        self._apply(data, str(path))
        self._paths.append(path)
        logger.debug("Configuration loaded", path=str(path))

    def load_defaults(self) -> None:
        """Load whichever of the default configuration files exist."""
        for path in (
            Path("bountiful.yaml"),
            Path("config/bountiful.yaml"),
            Path.home() / ".bountiful" / "config.yaml",
        ):
            if not path.is_file():
                continue
            try:
                self.load_from_file(path)
            except ConfigError as e:
                logger.warning("Ignoring unreadable default configuration", path=str(path), error=e.message)

    def _apply(self, data: Dict[str, Any], source: str) -> None:
        settings = dict(_walk(self._config))
        pending: List[Tuple[str, Any]] = []

        def flatten(node: Dict[str, Any], prefix: str) -> None:
            for key, value in node.items():
                path = f"{prefix}{key}"
                if path in settings:
                    pending.append((path, value))
                elif isinstance(value, dict):
                    flatten(value, path + ".")
                else:
                    logger.warning("Unknown configuration key", key=path, source=source)

        flatten(data, "")
        for path, value in pending:
            settings[path].set(value)

    def reload(self) -> None:
        """Re-read every loaded file, then notify watchers."""
        paths, self._paths = self._paths, []
        for path in paths:
            if path.is_file():
                self.load_from_file(path)
        for watcher in self._watchers:
            watcher(self._config)

    def watch(self, callback: Callable[[BountifulConfig], None]) -> None:
        self._watchers.append(callback)

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def _lookup(self, path: str) -> ConfigValue:
        setting = dict(_walk(self._config)).get(path)
        if setting is None:
            raise ConfigError(f"Invalid config path: {path}")
        return setting

    def set(self, path: str, value: Any) -> None:
        """Override one setting, e.g. ``set("fees.dev_fee_rate", 20)``."""
        self._lookup(path).set(value)

    def get(self, path: str) -> Any:
        """Current value of one setting, e.g. ``get("lifecycle.default_version")``."""
        return self._lookup(path).get()

    # -------------------------------------------------------------------------
    # Validation and schema
    # -------------------------------------------------------------------------

    def validate(self) -> List[str]:
        """Every problem with the effective configuration, as ``path: reason``."""
        errors: List[str] = []
        for path, setting in _walk(self._config):
            try:
                value = setting.get()
            except ConfigError as e:
                errors.append(f"{path}: {e.message}")
                continue
            if setting.validator is not None and not setting.validator(value):
                errors.append(f"{path}: validation failed for value {value!r}")
        try:
            self._config.fee_schedule()
        except ConfigError as e:
            errors.append(f"distribution.recipients: {e.message}")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Nested description of every setting, for documentation."""
        schema: Dict[str, Any] = {"properties": {}}
        for path, setting in _walk(self._config):
            *sections, leaf = path.split(".")
            node = schema["properties"]
            for s in sections:
                node = node.setdefault(s, {})
            entry = {
                "type": setting.kind.__name__,
                "default": str(setting.default),
                "description": setting.description,
            }
            if setting.env_var:
                entry["env_var"] = setting.env_var
            node[leaf] = entry
        return schema


def get_config() -> BountifulConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
