"""Per-entity statistical baselines, updated incrementally.

One ``BaselineProfile`` per (entity, metric): an exponentially weighted
mean and variance plus EW quantile estimates.  Memory is O(1) per metric
no matter how long the entity has been seen.  A ``CategoryProfile`` does
the same for categorical metrics (country of origin) by keeping EW
frequencies.

    alpha = max(2 / (training_window + 1), 1 / (n + 1))

The ``1 / (n + 1)`` floor makes the first samples behave like a plain
running mean instead of being dominated by the first value.

Profiles live in a ``ShardedState`` keyed by entity.  The anomaly scorer
reads the pre-update profile and observes the new value while holding the
entity's shard lock (``BaselineStore.locked``), so two events for the same
entity can never score against each other's half-applied update.
"""

import logging
import math
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace

from threatcore.config import BaselineSettings
from threatcore.events import EntityKey
from threatcore.sharding import ShardedState

logger = logging.getLogger(__name__)

QUANTILES = (0.5, 0.95, 0.99)

# Event ids remembered per entity for redelivery dedup.
_RECENT_EVENTS = 256

# Categories whose EW frequency falls below this are forgotten.
_MIN_FREQUENCY = 1e-4


def _alpha(count: int, training_window: int) -> float:
    return max(2.0 / (training_window + 1), 1.0 / (count + 1))


@dataclass
class BaselineProfile:
    entity: EntityKey
    metric: str
    count: int = 0
    mean: float = 0.0
    variance: float = 0.0
    quantiles: dict = field(default_factory=dict)
    confidence: float = 0.0
    first_seen: float | None = None
    last_update: float | None = None
    last_aged: float | None = None

    @property
    def std(self) -> float:
        return math.sqrt(max(self.variance, 0.0))

    def update(self, value: float, now: float, training_window: int) -> None:
        alpha = _alpha(self.count, training_window)
        if self.count == 0:
            self.mean = value
            self.variance = 0.0
            self.quantiles = {q: value for q in QUANTILES}
            self.first_seen = now
        else:
            # West's incremental EW variance.
            diff = value - self.mean
            incr = alpha * diff
            self.mean += incr
            self.variance = (1 - alpha) * (self.variance + diff * incr)
            self._update_quantiles(value, alpha)

        self.count += 1
        self.last_update = now
        self.confidence = min(1.0, self.confidence + 1.0 / training_window)

    def _update_quantiles(self, value: float, alpha: float) -> None:
        # Stochastic approximation: nudge each estimate up by p or down by
        # (1 - p), scaled to the current spread, so q settles where
        # P(x <= q) == p.
        scale = self.std or abs(value - self.mean) or 1.0
        step = alpha * scale
        for q, estimate in self.quantiles.items():
            if value > estimate:
                self.quantiles[q] = estimate + step * q
            elif value < estimate:
                self.quantiles[q] = estimate - step * (1 - q)

    def copy(self) -> "BaselineProfile":
        return replace(self, quantiles=dict(self.quantiles))


@dataclass
class CategoryProfile:
    entity: EntityKey
    metric: str
    count: int = 0
    frequencies: dict = field(default_factory=dict)
    confidence: float = 0.0
    first_seen: float | None = None
    last_update: float | None = None
    last_aged: float | None = None

    def share(self, value: str) -> float:
        """EW frequency of *value* among everything this entity has sent."""
        total = sum(self.frequencies.values())
        if total <= 0:
            return 0.0
        return self.frequencies.get(value, 0.0) / total

    def update(self, value: str, now: float, training_window: int) -> None:
        alpha = _alpha(self.count, training_window)
        for key in list(self.frequencies):
            self.frequencies[key] *= (1 - alpha)
            if self.frequencies[key] < _MIN_FREQUENCY:
                del self.frequencies[key]
        self.frequencies[value] = self.frequencies.get(value, 0.0) + alpha

        if self.first_seen is None:
            self.first_seen = now
        self.count += 1
        self.last_update = now
        self.confidence = min(1.0, self.confidence + 1.0 / training_window)

    def copy(self) -> "CategoryProfile":
        return replace(self, frequencies=dict(self.frequencies))


class EntityBaselines:
    """All profiles of one entity. Only touched under its shard lock."""

    __slots__ = ("entity", "profiles", "_recent", "_settings")

    def __init__(self, entity: EntityKey, settings: BaselineSettings):
        self.entity = entity
        self.profiles: dict[str, BaselineProfile | CategoryProfile] = {}
        self._recent: OrderedDict = OrderedDict()
        self._settings = settings

    def get(self, metric: str):
        return self.profiles.get(metric)

    def seen(self, event_id: str | None, metric: str) -> bool:
        return event_id is not None and (event_id, metric) in self._recent

    def observe(self, metric: str, value: float, now: float,
                event_id: str | None = None) -> bool:
        """Fold a numeric value into the metric's profile. False if a duplicate."""
        if not self._remember(event_id, metric):
            return False
        profile = self.profiles.get(metric)
        if profile is None:
            profile = self.profiles[metric] = BaselineProfile(self.entity, metric)
        profile.update(float(value), now, self._settings.training_window)
        return True

    def observe_category(self, metric: str, value: str, now: float,
                         event_id: str | None = None) -> bool:
        if not self._remember(event_id, metric):
            return False
        profile = self.profiles.get(metric)
        if profile is None:
            profile = self.profiles[metric] = CategoryProfile(self.entity, metric)
        profile.update(value, now, self._settings.training_window)
        return True

    def _remember(self, event_id, metric) -> bool:
        if event_id is None:
            return True
        key = (event_id, metric)
        if key in self._recent:
            return False
        self._recent[key] = True
        if len(self._recent) > _RECENT_EVENTS:
            self._recent.popitem(last=False)
        return True


class BaselineStore:

    def __init__(self, settings: BaselineSettings | None = None):
        self.settings = settings or BaselineSettings()
        self._state = ShardedState(self.settings.shards)

    def configure(self, settings: BaselineSettings) -> None:
        """Apply reloaded settings. Shard count is fixed at construction."""
        self.settings = settings
        for lock, data in self._state.each_locked():
            with lock:
                for baselines in data.values():
                    baselines._settings = settings

    @contextmanager
    def locked(self, entity: EntityKey):
        """Hold the entity's shard lock; yields its ``EntityBaselines``."""
        key = str(entity)
        with self._state.locked(key) as data:
            baselines = data.get(key)
            if baselines is None:
                baselines = data[key] = EntityBaselines(entity, self.settings)
            yield baselines

    def observe(self, entity: EntityKey, metric: str, value: float,
                now: float | None = None, event_id: str | None = None) -> bool:
        with self.locked(entity) as baselines:
            return baselines.observe(metric, value, time.time() if now is None else now, event_id)

    def observe_category(self, entity: EntityKey, metric: str, value: str,
                         now: float | None = None, event_id: str | None = None) -> bool:
        with self.locked(entity) as baselines:
            return baselines.observe_category(metric, value, time.time() if now is None else now, event_id)

    def profile(self, entity: EntityKey, metric: str):
        """Copy of the current profile, or None. Safe to read without a lock."""
        key = str(entity)
        with self._state.locked(key) as data:
            baselines = data.get(key)
            if baselines is None:
                return None
            profile = baselines.get(metric)
            return profile.copy() if profile is not None else None

    def age(self, now: float | None = None) -> int:
        """Decay confidence of profiles not updated for ``idle_seconds``.

        Each full idle period multiplies confidence by ``decay``.  Profiles are
        never deleted.  Returns the number of profiles aged.
        """
        now = time.time() if now is None else now
        idle = self.settings.idle_seconds
        aged = 0
        for lock, data in self._state.each_locked():
            with lock:
                for baselines in data.values():
                    for profile in baselines.profiles.values():
                        since = max(profile.last_update or now, profile.last_aged or 0.0)
                        periods = int((now - since) // idle)
                        if periods < 1:
                            continue
                        profile.confidence *= self.settings.decay ** periods
                        profile.last_aged = since + periods * idle
                        aged += 1
        if aged:
            logger.info("Aged %d idle baseline profiles", aged)
        return aged

    def __len__(self) -> int:
        return len(self._state)
