from math import floor

BASE_FARE = 50
RATE_PER_KM = 12
LUGGAGE_FEE = 20
POOL_DISCOUNT = 0.2

# (demand/supply ratio threshold, multiplier), highest first
SURGE_STEPS = ((5.0, 2.0), (2.5, 1.5), (1.5, 1.2))


def surge_factor(demand: int, supply: int) -> float:
    ratio = demand / (supply or 1)
    for threshold, factor in SURGE_STEPS:
        if ratio > threshold:
            return factor
    return 1.0


def compute_fare(distance_km: float, luggage: int = 0, demand: int = 1, supply: int = 1) -> int:
    """Pooled fare in whole currency units.

    fare = ((BASE_FARE + RATE_PER_KM * distance) * surge + luggage * LUGGAGE_FEE) * (1 - POOL_DISCOUNT)
    rounded half up.
    """
    fare = (BASE_FARE + RATE_PER_KM * distance_km) * surge_factor(demand, supply)
    if luggage > 0:
        fare += luggage * LUGGAGE_FEE
    fare *= 1 - POOL_DISCOUNT
    return int(floor(fare + 0.5))
