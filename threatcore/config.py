"""Engine configuration: versioned, YAML-backed and swapped atomically.

The engine consumes configuration, it never produces it.  An operator (or
the admin console) writes a YAML document; ``load_config`` validates it into
a frozen ``EngineConfig`` and ``ConfigHolder.reload`` publishes it by
reference swap.  A config whose version is not newer than the running one
is rejected so replayed updates can't roll the engine backwards.

Example:

    version: 3
    detector_timeout: 0.25
    signature_paths: [/etc/threatcore/signatures]
    signature_overrides: {sqli-union-select: false}
    metric_weights: {request_rate: 0.6, payload_size: 0.4}
    baseline: {training_window: 200, min_samples: 30}
    behavior: {deviation_threshold: 0.6}
    feedback: {step: 5}
"""

import os
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

from threatcore.errors import ConfigError

CONFIG_PATH_ENV = "CONFIG_PATH"

DEFAULT_METRIC_WEIGHTS = {
    "request_rate": 0.6,
    "payload_size": 0.4,
    "response_time": 0.3,
    "geo_novelty": 0.3,
}

# severity -> multiplier applied to a matched signature's weight
DEFAULT_SEVERITY_WEIGHTS = {
    "low": 0.4,
    "medium": 0.7,
    "high": 1.0,
    "critical": 1.2,
}


@dataclass(frozen=True)
class BaselineSettings:
    training_window: int = 100       # observations; EWMA alpha = 2 / (N + 1)
    min_samples: int = 20            # below this, scores are capped (cold start)
    cold_start_cap: float = 20.0
    z_saturation: float = 5.0        # |z| at which deviation reaches 100
    min_variance: float = 1e-6
    min_std: float = 1.0             # sigma floor in metric units
    relative_std_floor: float = 0.05 # sigma floor as a share of |mean|
    model: str = "zscore"            # zscore | quantile
    idle_seconds: float = 86_400.0   # unseen this long -> confidence decays
    decay: float = 0.5               # multiplier per idle period
    rate_window_seconds: float = 10.0
    shards: int = 64


@dataclass(frozen=True)
class BehaviorSettings:
    window_size: int = 50
    bucket_seconds: float = 300.0
    batch_size: int = 25
    min_observations: int = 50
    deviation_threshold: float = 0.5
    count_decay: float = 0.02        # per folded batch
    max_endpoints: int = 256
    sensitive_paths: tuple = ("/admin", "/config", "/internal", "/debug")
    shards: int = 64


@dataclass(frozen=True)
class FeedbackSettings:
    step: float = 10.0
    min_weight: float = 1.0
    max_weight: float = 100.0


@dataclass(frozen=True)
class AggregationSettings:
    severity_weights: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_SEVERITY_WEIGHTS))
    )
    behavior_weight: float = 0.4
    deviation_floor: float = 30.0    # deviations below this are not indicators
    critical_threshold: float = 90.0
    high_threshold: float = 70.0
    medium_threshold: float = 40.0


@dataclass(frozen=True)
class EngineConfig:
    version: int = 1
    detector_timeout: float = 0.5
    metric_weights: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_METRIC_WEIGHTS))
    )
    signature_overrides: Mapping[str, bool] = field(
        default_factory=lambda: MappingProxyType({})
    )
    signature_paths: tuple = ()
    baseline: BaselineSettings = field(default_factory=BaselineSettings)
    behavior: BehaviorSettings = field(default_factory=BehaviorSettings)
    feedback: FeedbackSettings = field(default_factory=FeedbackSettings)
    aggregation: AggregationSettings = field(default_factory=AggregationSettings)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(path: str | Path | None = None) -> EngineConfig:
    """Read and validate a YAML config. Falls back to $CONFIG_PATH, then defaults."""
    if path is None:
        path = os.environ.get(CONFIG_PATH_ENV)
    if not path:
        return EngineConfig()

    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"config file not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path.name}: invalid YAML: {e}") from None

    config = config_from_dict(data)
    # Relative signature paths are resolved against the config file.
    resolved = tuple(
        str(p if Path(p).is_absolute() else path.parent / p)
        for p in config.signature_paths
    )
    return replace(config, signature_paths=resolved)


def config_from_dict(data: dict) -> EngineConfig:
    if not isinstance(data, dict):
        raise ConfigError("config must be a mapping")

    unknown = set(data) - {f.name for f in fields(EngineConfig)}
    if unknown:
        raise ConfigError(f"unknown config keys: {sorted(unknown)}")

    version = data.get("version", 1)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ConfigError("'version' must be a positive integer")

    timeout = _number(data, "detector_timeout", 0.5)
    if timeout <= 0:
        raise ConfigError("'detector_timeout' must be > 0")

    weights = dict(DEFAULT_METRIC_WEIGHTS)
    for metric, weight in (data.get("metric_weights") or {}).items():
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
            raise ConfigError(f"metric weight for '{metric}' must be a number >= 0")
        weights[metric] = float(weight)

    overrides = data.get("signature_overrides") or {}
    if not isinstance(overrides, dict) or not all(
        isinstance(v, bool) for v in overrides.values()
    ):
        raise ConfigError("'signature_overrides' must map signature ids to true/false")

    paths = data.get("signature_paths") or ()
    if isinstance(paths, str):
        paths = (paths,)

    aggregation = _section(AggregationSettings, data.get("aggregation"))
    sev = dict(DEFAULT_SEVERITY_WEIGHTS)
    sev.update((data.get("aggregation") or {}).get("severity_weights") or {})
    aggregation = replace(aggregation, severity_weights=MappingProxyType(sev))
    if not (aggregation.medium_threshold < aggregation.high_threshold
            < aggregation.critical_threshold):
        raise ConfigError("aggregation thresholds must increase medium < high < critical")

    feedback = _section(FeedbackSettings, data.get("feedback"))
    if not 0 < feedback.min_weight <= feedback.max_weight:
        raise ConfigError("feedback weights must satisfy 0 < min_weight <= max_weight")
    if feedback.step <= 0:
        raise ConfigError("feedback step must be > 0")

    baseline = _section(BaselineSettings, data.get("baseline"))
    if baseline.training_window < 1 or baseline.min_samples < 1:
        raise ConfigError("baseline training_window and min_samples must be >= 1")
    if baseline.min_std < 0 or baseline.relative_std_floor < 0:
        raise ConfigError("baseline min_std and relative_std_floor must be >= 0")
    if baseline.model not in ("zscore", "quantile"):
        raise ConfigError(f"unknown baseline model '{baseline.model}'")

    behavior = _section(BehaviorSettings, data.get("behavior"))
    behavior = replace(behavior, sensitive_paths=tuple(behavior.sensitive_paths))

    return EngineConfig(
        version=version,
        detector_timeout=timeout,
        metric_weights=MappingProxyType(weights),
        signature_overrides=MappingProxyType(dict(overrides)),
        signature_paths=tuple(str(p) for p in paths),
        baseline=baseline,
        behavior=behavior,
        feedback=feedback,
        aggregation=aggregation,
    )


def _section(cls, data):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"'{cls.__name__}' section must be a mapping")
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        raise ConfigError(f"unknown keys in {cls.__name__}: {sorted(unknown)}")
    values = {k: v for k, v in data.items() if k != "severity_weights"}
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigError(f"{cls.__name__}: {e}") from None


def _number(data, name, default):
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{name}' must be a number")
    return float(value)


# ---------------------------------------------------------------------------
# Atomic reload
# ---------------------------------------------------------------------------

class ConfigHolder:
    """Holds the live config. Readers grab ``current`` once per event."""

    def __init__(self, config: EngineConfig | None = None):
        self._config = config or EngineConfig()
        self._lock = threading.Lock()
        self._listeners = []

    @property
    def current(self) -> EngineConfig:
        return self._config

    def subscribe(self, callback) -> None:
        """Call ``callback(config)`` after every successful reload."""
        self._listeners.append(callback)

    def reload(self, config: EngineConfig) -> EngineConfig:
        with self._lock:
            if config.version <= self._config.version:
                raise ConfigError(
                    f"config version {config.version} is not newer than "
                    f"running version {self._config.version}"
                )
            self._config = config
        for callback in self._listeners:
            callback(config)
        return config
