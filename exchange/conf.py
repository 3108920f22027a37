"""Access to the ``EXCHANGE`` settings dict with built-in defaults."""
from __future__ import annotations

from typing import Any

from django.conf import settings

DEFAULTS: dict[str, Any] = {
    'COMPLETION_WINDOW_DAYS': 7,
    'MATCH_WEIGHTS': {'name': 0.5, 'dosage': 0.15, 'distance': 0.2, 'quantity': 0.1},
    'DOSAGE_TOLERANCE': 0.001,
    'DEFAULT_DISTANCE_HORIZON_KM': 100.0,
    'BRAND_SYNONYMS': {},
    'MESSAGE_MAX_LENGTH': 2000,
    'BULK_IMPORT_MAX_ROWS': 5000,
}


def exchange_setting(key: str) -> Any:
    overrides = getattr(settings, 'EXCHANGE', None) or {}
    if key in overrides:
        return overrides[key]
    return DEFAULTS[key]
