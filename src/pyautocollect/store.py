"""Shared detection config and per-bin cooldown store.

This is the single source of truth every detector reads its thresholds
from, and the only place that decides whether a bin may be auto-recorded
again.  Persistence is best-effort: a storage failure degrades the store
to in-memory state rather than failing the caller.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from pyautocollect._constants import CONFIG_STORAGE_KEY, COOLDOWN_KEY_PREFIX
from pyautocollect._normalize import now_ms
from pyautocollect._storage import KeyValueStorage, MemoryStorage
from pyautocollect.config import DetectionConfig, canonical_config_keys
from pyautocollect.exceptions import AutoCollectConfigError, AutoCollectStorageError

_logger = logging.getLogger(__name__)


def _cooldown_key(bin_id: Any) -> str:
    return f"{COOLDOWN_KEY_PREFIX}{bin_id}"


class AutoCollectionStore:
    """Process-wide detection config and cooldown entries.

    Parameters
    ----------
    storage : KeyValueStorage or None
        Persistence backend.  Defaults to :class:`MemoryStorage`.
    clock : callable
        Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._storage: KeyValueStorage = storage if storage is not None else MemoryStorage()
        self._clock = clock
        self._config: DetectionConfig | None = None
        self._cooldowns: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def _load_config(self) -> DetectionConfig:
        try:
            raw = self._storage.get(CONFIG_STORAGE_KEY)
        except AutoCollectStorageError:
            _logger.debug("Config load failed; using defaults", exc_info=True)
            return DetectionConfig()
        if not raw:
            return DetectionConfig()
        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("persisted config is not an object")
            return DetectionConfig.model_validate(canonical_config_keys(parsed))
        except (ValueError, ValidationError):
            _logger.debug("Ignoring malformed persisted config", exc_info=True)
            return DetectionConfig()

    def _save_config(self, config: DetectionConfig) -> None:
        try:
            self._storage.set(CONFIG_STORAGE_KEY, json.dumps(config.to_storage(), separators=(",", ":")))
        except (AutoCollectStorageError, TypeError, ValueError):
            _logger.debug("Config persist failed; keeping in-memory config", exc_info=True)

    def get_config(self) -> DetectionConfig:
        """Effective config: persisted overrides merged over the defaults.

        The returned model is frozen, so callers can never mutate the
        shared copy.
        """
        if self._config is None:
            self._config = self._load_config()
        return self._config

    def update_config(self, partial: dict[str, Any]) -> DetectionConfig:
        """Shallow-merge *partial* into the config, persist it and return it.

        Unknown keys are retained.  Invalid values for known keys raise
        :class:`AutoCollectConfigError` and leave the config unchanged.
        """
        current = self.get_config()
        merged = current.to_storage()
        merged.update(canonical_config_keys(dict(partial)))
        try:
            updated = DetectionConfig.model_validate(merged)
        except ValidationError as exc:
            raise AutoCollectConfigError(f"Invalid detection config update: {exc}") from exc
        self._config = updated
        self._save_config(updated)
        _logger.debug("Detection config updated keys=%s", sorted(partial))
        return updated

    # ------------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------------

    def _cooldown_timestamp(self, bin_id: Any) -> int | None:
        key = str(bin_id)
        cached = self._cooldowns.get(key)
        if cached is not None:
            return cached
        try:
            raw = self._storage.get(_cooldown_key(key))
        except AutoCollectStorageError:
            _logger.debug("Cooldown lookup failed bin=%s", key, exc_info=True)
            return None
        if not raw:
            return None
        try:
            ts = int(raw)
        except ValueError:
            return None
        if ts <= 0:
            return None
        self._cooldowns[key] = ts
        return ts

    def is_in_cooldown(self, bin_id: Any) -> bool:
        """True iff *bin_id* was auto-recorded less than ``cooldown_ms`` ago."""
        ts = self._cooldown_timestamp(bin_id)
        if ts is None:
            return False
        return self._clock() - ts < self.get_config().cooldown_ms

    def set_cooldown(self, bin_id: Any) -> None:
        """Overwrite the cooldown entry for *bin_id* with the current time."""
        key = str(bin_id)
        now = self._clock()
        self._cooldowns[key] = now
        try:
            self._storage.set(_cooldown_key(key), str(now))
        except AutoCollectStorageError:
            _logger.debug("Cooldown persist failed bin=%s", key, exc_info=True)

    def cooldown_started_at(self, bin_id: Any) -> int | None:
        """Epoch-ms timestamp of the last auto-record of *bin_id*, if any."""
        return self._cooldown_timestamp(bin_id)

    def clear_cooldowns(self) -> int:
        """Drop every cooldown entry.  Returns the number of bins cleared."""
        cleared = set(self._cooldowns)
        self._cooldowns.clear()
        try:
            for key in self._storage.keys(COOLDOWN_KEY_PREFIX):
                cleared.add(key[len(COOLDOWN_KEY_PREFIX) :])
                self._storage.delete(key)
        except AutoCollectStorageError:
            _logger.debug("Cooldown clear failed", exc_info=True)
        return len(cleared)


_default_store: AutoCollectionStore | None = None


def default_store() -> AutoCollectionStore:
    """The process-wide store, created on first use."""
    global _default_store
    if _default_store is None:
        _default_store = AutoCollectionStore()
    return _default_store


def configure_default_store(store: AutoCollectionStore) -> AutoCollectionStore:
    """Install *store* as the process-wide store and return it."""
    global _default_store
    _default_store = store
    return store


def get_config() -> DetectionConfig:
    return default_store().get_config()


def update_config(partial: dict[str, Any]) -> DetectionConfig:
    return default_store().update_config(partial)


def is_in_cooldown(bin_id: Any) -> bool:
    return default_store().is_in_cooldown(bin_id)


def set_cooldown(bin_id: Any) -> None:
    default_store().set_cooldown(bin_id)
