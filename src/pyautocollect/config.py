"""Detection thresholds and runtime configuration for pyautocollect."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _env_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _env_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


class DetectionConfig(BaseModel):
    """Thresholds shared by every auto-collection detector.

    Persisted and exchanged with camelCase keys (``nearBinMeters``,
    ``cooldownMs``, ...).  Keys this version does not know about are kept
    as extra fields so a newer writer's settings survive a round trip.

    Parameters
    ----------
    near_bin_meters : float
        Geofence radius used by the dwell detector.
    position_history_size : int
        Number of consecutive samples that must all be inside the radius.
    check_interval_driver_at_bin_ms : int
        Poll interval of the dwell detector.
    proximity_meters : float
        Radius used by the proximity/fill-drop detector.
    proximity_check_interval_ms : int
        Poll interval of the proximity detector.
    min_dwell_near_bin_ms : int
        Time the agent must stay near a bin before a fill drop is trusted.
    min_fill_drop_percent : float
        A bin counts as emptied when its fill falls to this level or below.
    fill_was_above_percent : float
        ... and the fill previously was at or above this level.
    cooldown_ms : int
        Minimum time between two auto-records of the same bin.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    near_bin_meters: float = 30.0
    position_history_size: int = Field(default=3, ge=1)
    check_interval_driver_at_bin_ms: int = Field(default=15_000, gt=0)
    proximity_meters: float = 15.0
    proximity_check_interval_ms: int = Field(default=3_000, gt=0)
    min_dwell_near_bin_ms: int = 12_000
    min_fill_drop_percent: float = 0.0
    fill_was_above_percent: float = 20.0
    cooldown_ms: int = 2 * 60 * 60 * 1000

    def to_storage(self) -> dict[str, Any]:
        """Camel-cased dict including unknown keys, as persisted."""
        return self.model_dump(by_alias=True)


def canonical_config_keys(partial: dict[str, Any]) -> dict[str, Any]:
    """Rewrite snake_case field names in *partial* to their camelCase aliases."""
    fields = DetectionConfig.model_fields
    result: dict[str, Any] = {}
    for key, value in partial.items():
        info = fields.get(key)
        result[info.alias if info is not None and info.alias else key] = value
    return result


@dataclasses.dataclass(frozen=True)
class RuntimeConfig:
    """Process wiring settings (timers, storage, backend).

    Parameters
    ----------
    storage_path : str or None
        JSON file used to persist config and cooldowns.  ``None`` keeps
        everything in memory.
    backend_url : str or None
        Base URL of the fleet backend REST API.
    supervisor_interval_s : float
        How often the supervisor re-checks whether a driver is logged in.
    startup_delay_s : float
        Delay before the supervisor's first tick.
    ready_poll_attempts : int
        Readiness attempts of the coordination layer.
    ready_poll_interval_s : float
        Seconds per readiness attempt.  The layer waits at most
        ``ready_poll_attempts * ready_poll_interval_s`` for both subsystems.
    recent_collection_lookback_s : float
        A bin the agent collected within this window is never auto-recorded.
    location_refresh_delay_s : float
        Delay before a forced dwell check after a driver location change.
    auto_record_notice_ms : int
        Display duration of the auto-record notification.
    """

    storage_path: str | None = None
    backend_url: str | None = None
    supervisor_interval_s: float = 60.0
    startup_delay_s: float = 3.0
    ready_poll_attempts: int = 100
    ready_poll_interval_s: float = 0.1
    recent_collection_lookback_s: float = 24 * 3600
    location_refresh_delay_s: float = 2.0
    auto_record_notice_ms: int = 5000

    @property
    def ready_timeout_s(self) -> float:
        return self.ready_poll_attempts * self.ready_poll_interval_s

    @classmethod
    def from_env(cls, **overrides: Any) -> RuntimeConfig:
        """Create configuration from ``AUTOCOLLECT_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        _ENV_STR_MAP = {
            "AUTOCOLLECT_STORAGE_PATH": "storage_path",
            "AUTOCOLLECT_BACKEND_URL": "backend_url",
        }
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val:
                config_kwargs[field_name] = val

        defaults = cls()
        _ENV_FLOAT_MAP = {
            "AUTOCOLLECT_SUPERVISOR_INTERVAL_S": "supervisor_interval_s",
            "AUTOCOLLECT_STARTUP_DELAY_S": "startup_delay_s",
            "AUTOCOLLECT_READY_POLL_INTERVAL_S": "ready_poll_interval_s",
            "AUTOCOLLECT_RECENT_COLLECTION_LOOKBACK_S": "recent_collection_lookback_s",
            "AUTOCOLLECT_LOCATION_REFRESH_DELAY_S": "location_refresh_delay_s",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            if field_name not in overrides:
                config_kwargs[field_name] = _env_float(env.get(env_key), getattr(defaults, field_name))

        if "ready_poll_attempts" not in overrides:
            config_kwargs["ready_poll_attempts"] = _env_int(
                env.get("AUTOCOLLECT_READY_POLL_ATTEMPTS"),
                defaults.ready_poll_attempts,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
