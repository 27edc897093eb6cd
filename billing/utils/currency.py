"""Minor/major currency unit conversion."""

MINOR_UNITS_PER_MAJOR = 100


def to_major(amount_minor: int | float | None) -> float:
    """Convert an amount in minor units (paise, cents) to major units, 2 decimals."""
    if not amount_minor:
        return 0.0
    return round(float(amount_minor) / MINOR_UNITS_PER_MAJOR, 2)

