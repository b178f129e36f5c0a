from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

TIERS = ("trivial", "light", "standard", "epic")
DEFAULT_TIER = "standard"
DEFAULT_THRESHOLDS = {"trivial": 2, "light": 8, "standard": 20}
RISK_LEVELS = ("low", "medium", "high")
PROMOTING_RISKS = {"medium", "high"}


def _resolve_thresholds(thresholds: Mapping[str, Any] | None) -> dict[str, int]:
    resolved = dict(DEFAULT_THRESHOLDS)
    if not thresholds:
        return resolved
    for tier in DEFAULT_THRESHOLDS:
        value = thresholds.get(tier)
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            resolved[tier] = value
        elif value is not None:
            logger.warning("Ignoring invalid %s threshold: %r", tier, value)
    return resolved


def compute_recommended_tier(
    estimated_files: Any,
    risk_level: Any = "low",
    thresholds: Mapping[str, Any] | None = None,
) -> str:
    """Map a file-count estimate to a tier, then promote one tier for medium or high risk."""
    if (
        not isinstance(estimated_files, int)
        or isinstance(estimated_files, bool)
        or estimated_files < 0
    ):
        logger.warning(
            "Invalid file estimate %r; defaulting to %s tier", estimated_files, DEFAULT_TIER
        )
        return DEFAULT_TIER

    limits = _resolve_thresholds(thresholds)
    if estimated_files <= limits["trivial"]:
        tier = "trivial"
    elif estimated_files <= limits["light"]:
        tier = "light"
    elif estimated_files <= limits["standard"]:
        tier = "standard"
    else:
        tier = "epic"

    risk = risk_level.lower() if isinstance(risk_level, str) else None
    if risk not in RISK_LEVELS:
        logger.warning("Unknown risk level %r; treating as low", risk_level)
        risk = "low"
    if risk in PROMOTING_RISKS:
        tier = TIERS[min(TIERS.index(tier) + 1, len(TIERS) - 1)]
    return tier
