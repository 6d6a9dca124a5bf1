"""
Geo matching of donors and blood banks

Finds the donors (or blood banks) within reach of a blood request. The store
query narrows the candidates by role, blood group and a latitude band around
the request; exact great-circle distances are then computed here and the
result is filtered to the urgency-scaled radius and ordered nearest first.
Nothing is written.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from geopy.distance import great_circle

import config
from database import get_collection, normalize, with_retry
from schemas import BANK_PRIVATE_FIELDS, GeoPoint

logger = logging.getLogger(__name__)

# Sphere radius used by MongoDB 2dsphere queries, so distances agree with the index
EARTH_RADIUS_KM = 6378.1

CRITICAL_RADIUS_M = 100000
DEFAULT_RADIUS_M = 50000

# Recipient group -> donor groups whose red cells it can receive
COMPATIBLE_DONORS = {
    "O-": ["O-"],
    "O+": ["O-", "O+"],
    "A-": ["O-", "A-"],
    "A+": ["O-", "O+", "A-", "A+"],
    "B-": ["O-", "B-"],
    "B+": ["O-", "O+", "B-", "B+"],
    "AB-": ["O-", "A-", "B-", "AB-"],
    "AB+": ["O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"],
}


@dataclass
class Candidate:
    record: dict
    distance_m: float

    def as_dict(self) -> dict:
        return {**self.record, "distance_km": round(self.distance_m / 1000, 2)}


def radius_for(urgency: str) -> int:
    return CRITICAL_RADIUS_M if urgency == "critical" else DEFAULT_RADIUS_M


def donor_groups_for(blood_group: str, compatible: Optional[bool] = None) -> List[str]:
    if compatible is None:
        compatible = config.MATCH_COMPATIBLE_GROUPS
    if compatible:
        return COMPATIBLE_DONORS.get(blood_group, [])
    return [blood_group]


def distance_m(a: GeoPoint, b: GeoPoint) -> float:
    # geopy takes (lat, lon); GeoJSON stores [lon, lat]
    return great_circle((a.lat, a.lon), (b.lat, b.lon), radius=EARTH_RADIUS_KM).meters


def latitude_band(location: GeoPoint, radius_m: float) -> dict:
    delta = math.degrees(radius_m / (EARTH_RADIUS_KM * 1000)) + 0.01
    return {
        "location.coordinates.1": {
            "$gte": max(-90.0, location.lat - delta),
            "$lte": min(90.0, location.lat + delta),
        }
    }


def within_radius(records: Iterable[dict], location: GeoPoint, radius_m: float) -> List[Candidate]:
    """Keep records whose `location` lies within `radius_m` (inclusive), nearest first."""
    candidates = []
    for record in records:
        point = record.get("location")
        if not point:
            continue
        d = distance_m(location, GeoPoint(**point))
        # Compare at millimetre precision so a point placed on the boundary counts as inside
        if round(d, 3) <= radius_m:
            candidates.append(Candidate(record, d))
    candidates.sort(key=lambda c: c.distance_m)
    return candidates


@with_retry
def find_candidates(blood_group: str, location: GeoPoint, urgency: str,
                    exclude: Optional[Iterable[str]] = None,
                    compatible: Optional[bool] = None) -> List[Candidate]:
    """Active donors able to give to `blood_group` within the urgency radius of `location`."""
    radius = radius_for(urgency)
    query = {
        "is_donor": True,
        "is_active": True,
        "blood_group": {"$in": donor_groups_for(blood_group, compatible)},
        **latitude_band(location, radius),
    }
    excluded = set(exclude or ())
    records = [normalize(doc) for doc in get_collection("user").find(query, {"password_hash": 0})]
    records = [r for r in records if r["id"] not in excluded]
    candidates = within_radius(records, location, radius)
    logger.info("Matched %d donor(s) for %s within %d m (%s)",
                len(candidates), blood_group, radius, urgency)
    return candidates


@with_retry
def find_blood_banks(location: GeoPoint, radius_m: float = DEFAULT_RADIUS_M,
                     blood_group: Optional[str] = None) -> List[Candidate]:
    """Active blood banks within `radius_m`, optionally only those holding `blood_group` stock."""
    query = {"is_active": True, **latitude_band(location, radius_m)}
    if blood_group:
        query[f"inventory.{blood_group}"] = {"$gt": 0}
    records = [normalize(doc) for doc in get_collection("bloodbank").find(query, BANK_PRIVATE_FIELDS)]
    return within_radius(records, location, radius_m)
