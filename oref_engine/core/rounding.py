import math


def round_half_up(value, digits=0):
    """Round like JavaScript's Math.round, halves toward +infinity."""
    if value is None:
        return None
    scale = 10**digits
    # + 0.0 turns -0.0 into 0.0
    return math.floor(value * scale + 0.5) / scale + 0.0


def floor_to(value, increment):
    """Round down to a multiple of ``increment`` (bolus increments)."""
    if increment <= 0:
        return value
    steps = math.floor(round(value / increment, 9))
    return round(steps * increment, 10) + 0.0
