"""
Unit conversion for shopping list aggregation.

Every known unit maps to a base unit (g, ml, each) by a factor. Mass and
volume can be bridged with an approximate density for common staples.
Aggregated needs are rounded up to retail steps and shown in a readable
unit for the configured system.
"""

import math
from dataclasses import dataclass
from typing import Literal, Optional

UnitType = Literal["mass", "volume", "count", "unknown"]

BASE_UNITS = {"mass": "g", "volume": "ml", "count": "each"}

# factor to base unit
MASS_UNITS = {
    "mg": 0.001, "g": 1.0, "gram": 1.0, "kg": 1000.0, "kilogram": 1000.0,
    "oz": 28.3495, "ounce": 28.3495, "lb": 453.592, "pound": 453.592,
}
VOLUME_UNITS = {
    "ml": 1.0, "milliliter": 1.0, "l": 1000.0, "liter": 1000.0,
    "tsp": 4.92892, "teaspoon": 4.92892, "tbsp": 14.7868, "tablespoon": 14.7868,
    "fl oz": 29.5735, "cup": 236.588, "pt": 473.176, "qt": 946.353, "gal": 3785.41,
}
COUNT_UNITS = {
    name: 1.0
    for name in ("each", "unit", "piece", "pc", "whole", "clove", "slice", "can")
}

UNITS_DB: dict[str, tuple[UnitType, float]] = {
    **{u: ("mass", f) for u, f in MASS_UNITS.items()},
    **{u: ("volume", f) for u, f in VOLUME_UNITS.items()},
    **{u: ("count", f) for u, f in COUNT_UNITS.items()},
}

# Checked before lower-casing, so "T" and "t" differ
SYNONYMS = {
    "T": "tbsp", "t": "tsp", "tbl": "tbsp", "c": "cup",
    "lbs": "lb", "pcs": "pc", "units": "unit",
}

# g per ml, approximate
DENSITY_DB = {
    "water": 1.0, "milk": 1.03, "oil": 0.92, "butter": 0.911,
    "flour": 0.593, "sugar": 0.849, "brown sugar": 0.93, "honey": 1.42,
    "salt": 1.2, "rice": 0.85, "oats": 0.38,
}

# Retail rounding step in base units
RETAIL_STEPS = {"mass": 50.0, "volume": 50.0, "count": 1.0}

OZ_IN_G = MASS_UNITS["oz"]


@dataclass
class ConversionResult:
    qty: float
    unit: str
    confidence: str = "high"  # high | medium | low
    note: Optional[str] = None
    is_approx: bool = False

    @property
    def ok(self) -> bool:
        return self.confidence != "low"


def normalize_unit(unit: str) -> Optional[str]:
    """Canonical UNITS_DB key for a free-form unit, or None."""
    if not unit:
        return None

    raw = unit.strip().rstrip(".")
    if raw in SYNONYMS:
        return SYNONYMS[raw]

    lowered = raw.lower()
    for candidate in (lowered, SYNONYMS.get(lowered), lowered[:-1] if lowered.endswith("s") else None):
        if candidate and candidate in UNITS_DB:
            return candidate
    return None


def get_unit_info(unit: str) -> tuple[UnitType, float]:
    return UNITS_DB.get(unit, ("unknown", 1.0))


def unit_type(unit: str) -> UnitType:
    norm = normalize_unit(unit)
    return get_unit_info(norm)[0] if norm else "unknown"


def to_base(qty: float, unit: str) -> tuple[float, str, UnitType]:
    """
    Express a quantity in its base unit (g, ml, each).
    Unknown units (bunch, head, pinch) pass through lower-cased.
    """
    norm = normalize_unit(unit)
    if not norm:
        return qty, (unit or "").strip().lower(), "unknown"
    kind, factor = get_unit_info(norm)
    return qty * factor, BASE_UNITS[kind], kind


def estimate_density(ingredient_name: str) -> tuple[float, str]:
    """(g per ml, confidence). Partial name matches ("basmati rice") are low confidence."""
    name = ingredient_name.lower()
    if name in DENSITY_DB:
        return DENSITY_DB[name], "medium"
    partial = next((d for key, d in DENSITY_DB.items() if key in name), None)
    if partial is not None:
        return partial, "low"
    return 1.0, "none"


def convert_unit(
    qty: float,
    from_unit: str,
    to_unit: str,
    ingredient_name: str = "",
) -> ConversionResult:
    """
    Convert between units. Results with confidence "low" (not .ok) carry
    the input quantity unchanged and must not be used for arithmetic.
    """
    src = normalize_unit(from_unit)
    dst = normalize_unit(to_unit)

    if not src or not dst:
        same = (from_unit or "").strip().lower() == (to_unit or "").strip().lower()
        if same:
            return ConversionResult(qty, to_unit)
        return ConversionResult(qty, to_unit, "low", "Unknown unit", is_approx=True)

    src_kind, src_factor = get_unit_info(src)
    dst_kind, dst_factor = get_unit_info(dst)
    base = qty * src_factor

    if src_kind == dst_kind:
        return ConversionResult(base / dst_factor, dst)

    if {src_kind, dst_kind} != {"mass", "volume"}:
        return ConversionResult(qty, to_unit, "low", "Cannot convert count to measurement", is_approx=True)

    density, confidence = estimate_density(ingredient_name)
    if confidence == "none":
        return ConversionResult(qty, dst, "low", "No density known for mass/volume conversion", is_approx=True)

    bridged = base / density if src_kind == "mass" else base * density
    return ConversionResult(
        bridged / dst_factor,
        dst,
        "medium",
        note=f"Approximated using density of {ingredient_name}",
        is_approx=True,
    )


def _us_volume_unit(ml: float) -> str:
    for limit, unit in ((15, "tsp"), (60, "tbsp"), (950, "cup"), (3800, "qt")):
        if ml < limit:
            return unit
    return "gal"


def auto_select_unit(qty: float, current_unit: str, target_system: str = "metric") -> str:
    """Readable display unit for a quantity. target_system: "metric" or "us_customary"."""
    norm = normalize_unit(current_unit)
    if not norm:
        return current_unit

    kind, factor = get_unit_info(norm)
    base = qty * factor

    if kind == "count":
        return "each"
    if target_system == "us_customary":
        if kind == "volume":
            return _us_volume_unit(base)
        return "lb" if base / OZ_IN_G >= 16 else "oz"
    if kind == "volume":
        return "l" if base >= 1000 else "ml"
    return "kg" if base >= 1000 else "g"


def round_up_to_retail(base_qty: float, u_type: UnitType) -> float:
    """Round a base-unit quantity up to the next purchasable step."""
    if base_qty <= 0:
        return 0.0
    step = RETAIL_STEPS.get(u_type)
    if step is None:
        # Unknown units: nearest quarter, never below what is needed
        return math.ceil(base_qty * 4 - 1e-9) / 4
    return math.ceil(base_qty / step - 1e-9) * step


def format_qty(qty: float) -> float:
    """Trim float noise for display."""
    if qty < 10:
        return round(qty, 2)
    if qty < 100:
        return round(qty, 1)
    return float(round(qty))
