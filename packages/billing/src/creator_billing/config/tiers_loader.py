"""Load the subscription tier catalog from YAML."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

UNLIMITED = -1


@dataclass(frozen=True)
class FeatureLimits:
    """Usage limits granted by a tier. ``-1`` means unlimited."""

    max_active_deals: int = UNLIMITED
    max_invoices_per_month: int = UNLIMITED
    max_users: int = 1
    max_creators: int | None = None

    def allows(self, limit_name: str, current: int) -> bool:
        limit = getattr(self, limit_name)
        if limit is None or limit == UNLIMITED:
            return True
        return current < limit


@dataclass(frozen=True)
class TierPlan:
    """One entry of the tier catalog."""

    key: str
    display_name: str
    rank: int
    monthly_price: Decimal
    quarterly_price: Decimal
    limits: FeatureLimits
    features: tuple[str, ...] = field(default_factory=tuple)


def _to_limits(raw: dict[str, Any] | None) -> FeatureLimits:
    raw = raw or {}
    return FeatureLimits(
        max_active_deals=int(raw.get("max_active_deals", UNLIMITED)),
        max_invoices_per_month=int(raw.get("max_invoices_per_month", UNLIMITED)),
        max_users=int(raw.get("max_users", 1)),
        max_creators=(
            int(raw["max_creators"]) if raw.get("max_creators") is not None else None
        ),
    )


def parse_tier_catalog(data: dict[str, Any]) -> dict[str, TierPlan]:
    """Build tier plans from an already-parsed YAML mapping."""
    catalog: dict[str, TierPlan] = {}
    for key, entry in data.items():
        if not isinstance(entry, dict):
            raise ValueError(f"Tier {key!r} must be a mapping")
        catalog[key] = TierPlan(
            key=key,
            display_name=str(entry.get("display_name", key)),
            rank=int(entry["rank"]),
            monthly_price=Decimal(str(entry["monthly_price"])),
            quarterly_price=Decimal(str(entry["quarterly_price"])),
            limits=_to_limits(entry.get("limits")),
            features=tuple(entry.get("features") or ()),
        )
    return catalog


@lru_cache
def load_tier_catalog(path: str | None = None) -> dict[str, TierPlan]:
    """Load the tier catalog.

    Args:
        path: Optional YAML file. Defaults to ``tiers.yaml`` next to this module.

    Returns:
        Mapping of tier key to plan.
    """
    catalog_path = Path(path) if path else Path(__file__).resolve().parent / "tiers.yaml"
    raw = catalog_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    return parse_tier_catalog(data)
