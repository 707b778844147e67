"""
Aggregate numbers and map helpers for the dashboard.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

TOP_N = 5
NEARBY_LIMIT = 10
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_created_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def top_counts(values: List[str], label: str, n: int = TOP_N) -> List[Dict]:
    counts = Counter(v or "Unknown" for v in values)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{label: value, "count": count} for value, count in ranked[:n]]


def compute_dashboard_stats(reports: List[Dict], now: Optional[datetime] = None) -> Dict:
    """Headline counts over reports that already carry their photos."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_ago = today - timedelta(days=7)

    created = [parse_created_at(r.get("created_at")) for r in reports]

    return {
        "totalReports": len(reports),
        "reportsToday": sum(1 for c in created if c and c >= today),
        "reportsThisWeek": sum(1 for c in created if c and c >= week_ago),
        "reportsWithPhotos": sum(1 for r in reports if r.get("photos")),
        "vehicleInvolved": sum(1 for r in reports if r.get("has_vehicle")),
        "weaponInvolved": sum(1 for r in reports if r.get("has_weapon")),
        "topCrimeTypes": top_counts([r.get("crime_type") for r in reports], "type"),
        "topPostcodes": top_counts([r.get("postcode") for r in reports], "postcode"),
    }


def with_coordinates(reports: List[Dict], geocoder) -> List[Dict]:
    """Attach display coordinates ([lat, lon] or None) to each report."""
    out = []
    for report in reports:
        coords = geocoder.coordinates_for(report)
        out.append({**report, "coordinates": list(coords) if coords else None})
    return out


def plottable(reports: List[Dict]) -> List[Dict]:
    """Only reports that can be placed on the map."""
    kept = [r for r in reports if r.get("coordinates")]
    skipped = len(reports) - len(kept)
    if skipped:
        logger.debug(f"{skipped} report(s) have no coordinates and won't be plotted")
    return kept


@dataclass(frozen=True)
class MapBounds:
    south: float
    north: float
    west: float
    east: float

    def contains(self, coords) -> bool:
        lat, lon = coords
        return self.south <= lat <= self.north and self.west <= lon <= self.east


def within_bounds(reports: List[Dict], bounds: MapBounds, limit: int = NEARBY_LIMIT) -> List[Dict]:
    """Nearby reports for the current map view: inside the bounds (edges count), newest first."""
    inside = [r for r in reports if r.get("coordinates") and bounds.contains(r["coordinates"])]
    inside.sort(key=lambda r: parse_created_at(r.get("created_at")) or EPOCH, reverse=True)
    return inside[:limit]
