"""Estimate time to dropoff from remaining route distance."""

import logging

logger = logging.getLogger(__name__)

# Floor for the average route speed (km/h) - prevents division by zero / extreme ETAs
MIN_SPEED_KMH = 5.0
# Speed assumed when the provider gave no duration (km/h)
DEFAULT_SPEED_KMH = 40.0
# Maximum reasonable ETA (seconds)
MAX_ETA_SECONDS = 4 * 3600


class EtaCalculator:
    """Speed-based ETA using the planned route's average speed."""

    def average_speed_ms(self, route_distance_m: float, route_duration_s: float) -> float:
        if route_distance_m > 0 and route_duration_s > 0:
            speed_kmh = route_distance_m / route_duration_s * 3.6
        else:
            speed_kmh = DEFAULT_SPEED_KMH
        return max(speed_kmh, MIN_SPEED_KMH) / 3.6  # km/h -> m/s

    def calculate(
        self,
        remaining_m: float,
        route_distance_m: float,
        route_duration_s: float,
    ) -> int | None:
        """Seconds to cover `remaining_m` at the route's average speed; None if unreliable."""
        if remaining_m < 0:
            remaining_m = 0
        eta_s = int(remaining_m / self.average_speed_ms(route_distance_m, route_duration_s))
        if eta_s > MAX_ETA_SECONDS:
            return None  # Too far out to be reliable
        return eta_s
