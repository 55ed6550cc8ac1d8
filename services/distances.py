"""
Static road distance table used to price transfers.
"""
import json
from decimal import Decimal
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from loguru import logger

from config.settings import settings
from services.exceptions import ValidationError
from services.pricing import TripType, transfer_price


# Destinations closer than this to the departure are not offered
MIN_TRANSFER_DISTANCE_KM = Decimal("50")


class DistanceTable:
    """Distances keyed by unordered location pair"""

    def __init__(self, entries: Iterable[Mapping]):
        self._distances: Dict[FrozenSet[str], Decimal] = {}
        self._locations = set()
        for entry in entries:
            a, b = entry["from"], entry["to"]
            self._distances[frozenset((a, b))] = Decimal(str(entry["distance_km"]))
            self._locations.update((a, b))

    @classmethod
    def from_file(cls, path: Optional[str] = None) -> "DistanceTable":
        path = Path(path or settings.distances_path)
        with path.open(encoding="utf-8") as f:
            entries = json.load(f)
        logger.debug(f"Loaded {len(entries)} distances from {path}")
        return cls(entries)

    @property
    def locations(self) -> List[str]:
        return sorted(self._locations)

    def distance_km(self, departure: str, destination: str) -> Decimal:
        distance = self._distances.get(frozenset((departure, destination)))
        if not distance:
            raise ValidationError(f"No distance known between {departure} and {destination}")
        return distance

    def selectable_destinations(self, departure: str,
                                min_km: Decimal = MIN_TRANSFER_DISTANCE_KM) -> List[str]:
        """Destinations at least min_km away from the departure"""
        destinations = []
        for pair, distance in self._distances.items():
            if departure in pair and distance >= min_km:
                other = next(iter(pair - {departure}), None)
                if other:
                    destinations.append(other)
        return sorted(destinations)

    def quote_transfer(self, departure: str, destination: str, price_per_km,
                       trip_type: TripType, driver_languages: Sequence[str] = ()) -> Decimal:
        return transfer_price(
            self.distance_km(departure, destination), price_per_km, trip_type, driver_languages
        )
