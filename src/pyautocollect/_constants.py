"""Shared constants for pyautocollect."""

from __future__ import annotations

#: Storage key holding the persisted detection config overrides.
CONFIG_STORAGE_KEY = "autoCollectionConfig"

#: Prefix of the per-bin cooldown storage keys.
COOLDOWN_KEY_PREFIX = "autoCollectionCooldown_"

#: Mean Earth radius used by the haversine fallback.
EARTH_RADIUS_KM = 6371.0

#: Session user type that enables the detectors.
DRIVER_USER_TYPE = "driver"

#: Meta passed to ``mark_bin_collected`` for inferred collections.
AUTO_COLLECTION_META: dict[str, bool] = {"isAutoCollection": True}

USER_AGENT = "pyautocollect/1 (+aiohttp)"
