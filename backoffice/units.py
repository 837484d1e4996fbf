"""
Unit conversion shared by every costing and planning computation.

Grams are the weight base and millilitres the volume base. Weight and volume
are bridged by the kitchen approximation 1 g ~ 1 ml. Count units (piece,
bunch) only convert to weight or volume through an item equivalence.
"""

import logging

logger = logging.getLogger(__name__)

WEIGHT = "weight"
VOLUME = "volume"
COUNT = "count"

# unit -> (dimension, factor to the dimension's base unit)
UNIT_FACTORS = {
    "kg": (WEIGHT, 1000.0),
    "g": (WEIGHT, 1.0),
    "mg": (WEIGHT, 0.001),
    "l": (VOLUME, 1000.0),
    "litre": (VOLUME, 1000.0),
    "litres": (VOLUME, 1000.0),
    "cl": (VOLUME, 10.0),
    "ml": (VOLUME, 1.0),
    "pièce": (COUNT, 1.0),
    "piece": (COUNT, 1.0),
    "botte": (COUNT, 1.0),
}

BASE_UNITS = {WEIGHT: "g", VOLUME: "ml"}
LARGE_UNITS = {"g": "kg", "ml": "L"}


def normalize_unit(unit):
    return (unit or "").strip().lower()


def dimension(unit):
    """Physical dimension of a unit, or None when the unit is unknown."""
    entry = UNIT_FACTORS.get(normalize_unit(unit))
    return entry[0] if entry else None


def is_metric(unit):
    return dimension(unit) in (WEIGHT, VOLUME)


def base_unit_for(unit):
    """g for weights, ml for volumes, the normalised unit itself otherwise."""
    dim = dimension(unit)
    if dim in BASE_UNITS:
        return BASE_UNITS[dim]
    return normalize_unit(unit)


def _positive(value):
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if value != value or value <= 0 or value == float("inf"):
        return None
    return value


def _equivalence(equivalences, f, t):
    if not equivalences:
        return None
    direct = _positive(equivalences.get(f"{f}->{t}"))
    if direct is not None:
        return direct
    reverse = _positive(equivalences.get(f"{t}->{f}"))
    if reverse is not None:
        return 1.0 / reverse
    return None


def _static_factor(f, t):
    from_entry = UNIT_FACTORS.get(f)
    to_entry = UNIT_FACTORS.get(t)
    if from_entry is None or to_entry is None:
        return None
    from_dim, from_factor = from_entry
    to_dim, to_factor = to_entry
    if from_dim == to_dim:
        return from_factor / to_factor
    if from_dim != COUNT and to_dim != COUNT:
        # weight <-> volume, density taken as 1 g/ml
        return from_factor / to_factor
    return None


def get_conversion_factor(from_unit, to_unit, item=None):
    """
    Returns the multiplier turning a quantity in `from_unit` into `to_unit`.

    `item` is any record exposing `equivalence_table()` (ingredient or
    preparation). Lookup order: item equivalence, static table, chained
    conversion through the item's base unit. Unknown conversions return 1
    and log a warning; this function never raises.
    """
    f = normalize_unit(from_unit)
    t = normalize_unit(to_unit)
    if not f or not t or f == t:
        return 1.0

    equivalences = item.equivalence_table() if item is not None else None

    factor = _equivalence(equivalences, f, t)
    if factor is not None:
        return factor

    factor = _static_factor(f, t)
    if factor is not None:
        return factor

    # pièce -> g -> kg, or kg -> g -> pièce
    if equivalences:
        for base in BASE_UNITS.values():
            to_base = _equivalence(equivalences, f, base)
            if to_base is not None:
                rest = _static_factor(base, t)
                if rest is not None:
                    return to_base * rest
            from_base = _equivalence(equivalences, base, t)
            if from_base is not None:
                head = _static_factor(f, base)
                if head is not None:
                    return head * from_base

    item_name = getattr(item, "name", None)
    logger.warning(
        "No conversion from '%s' to '%s'%s; using factor 1.",
        from_unit,
        to_unit,
        f" for '{item_name}'" if item_name else "",
    )
    return 1.0


def convert_quantity(quantity, from_unit, to_unit, item=None):
    return quantity * get_conversion_factor(from_unit, to_unit, item)


def humanize_quantity(quantity, unit):
    """Re-expresses 1000 g or more as kg and 1000 ml or more as L."""
    base = normalize_unit(unit)
    if base in LARGE_UNITS and abs(quantity) >= 1000:
        return quantity / 1000.0, LARGE_UNITS[base]
    return quantity, unit
