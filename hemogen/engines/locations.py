"""
Location selection.

Anomalous records lean towards the configured outbreak locations, which is
what makes per-location daily counts spike there while the normal
locations keep a stable baseline.
"""

from __future__ import annotations

import logging
import random

from hemogen.config import AnomalyConfig, DEFAULT_NORMAL_LOCATION, DEFAULT_OUTBREAK_LOCATION
from hemogen.models import Location

logger = logging.getLogger(__name__)


def _parse_locations(values: tuple[str, ...], default: str, kind: str) -> list[Location]:
    """Parse configured "city|region" strings, falling back to a default."""
    locations = []
    for value in values:
        try:
            locations.append(Location.parse(value))
        except ValueError as e:
            logger.warning("Ignoring malformed %s location %r: %s", kind, value, e)

    if not locations:
        logger.warning("No %s locations configured. Using default %s.", kind, default)
        locations.append(Location.parse(default))
    return locations


class LocationSelector:
    """Picks the origin location for a record."""

    def __init__(self, config: AnomalyConfig, rng: random.Random | None = None):
        self.config = config
        self.rng = rng or random.Random()
        self.outbreak_locations = _parse_locations(
            config.outbreak_locations, DEFAULT_OUTBREAK_LOCATION, "outbreak"
        )
        self.normal_locations = _parse_locations(
            config.normal_locations, DEFAULT_NORMAL_LOCATION, "normal"
        )
        self.all_locations = self.normal_locations + self.outbreak_locations

    def select(self, anomalous: bool, forced: Location | str | None = None) -> Location:
        """
        Choose a location.

        A forced location always wins. Otherwise an anomalous record goes to
        an outbreak location with probability ``outbreak_bias`` and to any
        location the rest of the time; a normal record goes to a normal
        location.
        """
        if forced is not None:
            return forced if isinstance(forced, Location) else Location.parse(forced)

        if anomalous:
            if self.rng.random() < self.config.outbreak_bias:
                return self.rng.choice(self.outbreak_locations)
            return self.rng.choice(self.all_locations)
        return self.rng.choice(self.normal_locations)
