"""
Distance Ranker

Ranks veterinary facilities by great-circle distance from the user.
Pure functions only: no I/O, no shared state.  When GPS is unavailable the
caller passes a region centroid instead and the same ranking applies.
"""

from __future__ import annotations

from datetime import datetime, time
from math import asin, cos, radians, sin, sqrt
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from pashucare.config import settings
from pashucare.models.schemas import Coordinates, FacilityRecord, Hospital

EARTH_RADIUS_KM = 6371.0

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance (km) between two lat/lng points."""
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return EARTH_RADIUS_KM * c


def parse_window(window: str) -> tuple[time, time]:
    """Parse ``"HH:MM-HH:MM"`` into a (start, end) pair.

    Raises:
        ValueError: if the window is malformed.
    """
    start_str, sep, end_str = window.partition("-")
    if not sep:
        raise ValueError(f"malformed hours window: {window!r}")
    start = time.fromisoformat(start_str.strip())
    end_str = end_str.strip()
    # "24:00" is a common way of writing end-of-day
    end = time(23, 59, 59) if end_str == "24:00" else time.fromisoformat(end_str)
    return start, end


def is_open(operating_hours: dict[str, list[str]], now: datetime) -> bool:
    """Return True if ``now`` falls inside any window of the weekly map.

    A window whose end precedes its start runs past midnight, so the
    previous day's overnight window is checked too.
    """
    today = WEEKDAYS[now.weekday()]
    yesterday = WEEKDAYS[(now.weekday() - 1) % 7]
    current = now.time().replace(tzinfo=None)

    for window in operating_hours.get(today, []):
        start, end = parse_window(window)
        if start <= end:
            if start <= current <= end:
                return True
        elif current >= start:
            return True

    for window in operating_hours.get(yesterday, []):
        start, end = parse_window(window)
        if start > end and current <= end:
            return True

    return False


def local_now(tz_name: Optional[str] = None) -> datetime:
    return datetime.now(ZoneInfo(tz_name or settings.FACILITY_TIMEZONE))


def rank(
    user: Coordinates,
    facilities: Iterable[FacilityRecord],
    max_distance: float = 50.0,
    now: Optional[datetime] = None,
    language: str = "en",
) -> list[Hospital]:
    """Rank facilities by distance from ``user``.

    Facilities beyond ``max_distance`` km are dropped, as are facilities
    closed at ``now`` unless they are emergency-capable.  The result is
    sorted ascending by distance, ties broken by facility id.

    Args:
        user: The user's coordinates (or a region centroid).
        facilities: Candidate facility records.
        max_distance: Search radius in km.
        now: Local time used for the opening-hours check; defaults to the
            current time in the facility timezone.
        language: Language tag used to pick the facility name.

    Returns:
        Ranked list of Hospital entries.
    """
    if now is None:
        now = local_now()

    ranked: list[Hospital] = []
    for facility in facilities:
        distance = haversine(user.latitude, user.longitude, facility.latitude, facility.longitude)
        if distance > max_distance:
            continue
        open_now = is_open(facility.operating_hours, now)
        if not open_now and not facility.emergency_capable:
            continue
        ranked.append(Hospital(
            facility_id=facility.facility_id,
            name=facility.localized_name(language),
            distance_km=round(distance, 2),
            contacts=list(facility.contacts),
            operating_hours={day: list(w) for day, w in facility.operating_hours.items()},
            open_now=open_now,
            emergency_available=facility.emergency_capable,
            facility_type=facility.facility_type,
        ))

    ranked.sort(key=lambda h: (h.distance_km, h.facility_id))
    return ranked
