"""
Postcode and place geocoding.

Postcodes resolve through postcodes.io; free-text place search goes to
Nominatim. Lookups never raise: a failed lookup means "not plottable".
"""
import logging
import re
import threading
import time
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

Coordinates = Tuple[float, float]

# Cache marker for "never looked up"; a cached None means "definitely not found".
_MISSING = object()

POINT_RE = re.compile(r"^\s*POINT\s*\(\s*(?P<x>-?\d+(?:\.\d+)?)\s+(?P<y>-?\d+(?:\.\d+)?)\s*\)\s*$", re.I)


def normalize_postcode(postcode: Optional[str]) -> str:
    return (postcode or "").strip().upper()


def point_wkt(lat: float, lon: float) -> str:
    """WKT point in x/y order (lon lat)."""
    return f"POINT({float(lon)} {float(lat)})"


def parse_point(wkt: Optional[str]) -> Optional[Coordinates]:
    """Return (lat, lon) from a stored WKT point, or None."""
    m = POINT_RE.match(wkt or "")
    if not m:
        return None
    return float(m.group("y")), float(m.group("x"))


class PostcodeGeocoder:
    """Postcode -> (lat, lon) with a bounded in-memory cache.

    Definitive answers are cached, including "no such postcode"; transport
    errors and 5xx responses are not, so a flaky upstream doesn't pin a
    postcode as unresolvable.
    """

    def __init__(
        self,
        base_url: str = "https://api.postcodes.io",
        timeout: float = 5,
        user_agent: str = "CrimeReports/1.0",
        max_entries: int = 5000,
        ttl_seconds: Optional[float] = None,
        place_search_url: str = "https://nominatim.openstreetmap.org/search",
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self.max_entries = max(1, int(max_entries))
        self.ttl_seconds = ttl_seconds
        self.place_search_url = place_search_url
        self._cache: "OrderedDict[str, Tuple[Optional[Coordinates], float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _cache_get(self, key: str) -> object:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self.misses += 1
                return _MISSING
            coords, stored_at = entry
            if self.ttl_seconds is not None and time.time() - stored_at > self.ttl_seconds:
                del self._cache[key]
                self.misses += 1
                return _MISSING
            self._cache.move_to_end(key)
            self.hits += 1
            return coords

    def _cache_put(self, key: str, coords: Optional[Coordinates]) -> None:
        with self._lock:
            self._cache[key] = (coords, time.time())
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)

    def cache_info(self) -> Dict:
        with self._lock:
            return {
                "size": len(self._cache),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
            }

    def lookup(self, postcode: Optional[str]) -> Optional[Coordinates]:
        """Resolve a postcode to (lat, lon), or None if it can't be resolved."""
        normalized = normalize_postcode(postcode)
        if not normalized:
            return None

        cached = self._cache_get(normalized)
        if cached is not _MISSING:
            return cached

        try:
            resp = requests.get(
                f"{self.base_url}/postcodes/{quote(normalized)}",
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Error geocoding postcode {normalized}: {e}")
            return None

        if resp.status_code == 404:
            logger.warning(f"Invalid postcode: {normalized}")
            self._cache_put(normalized, None)
            return None
        if resp.status_code != 200:
            logger.warning(f"Postcode API error for {normalized}: {resp.status_code}")
            return None

        try:
            data = resp.json() or {}
            if data.get("status") != 200 or not data.get("result"):
                logger.warning(f"Invalid postcode: {normalized}")
                self._cache_put(normalized, None)
                return None
            result = data["result"]
            coords = (float(result["latitude"]), float(result["longitude"]))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Unexpected postcode API response for {normalized}: {e}")
            return None

        self._cache_put(normalized, coords)
        return coords

    def search_places(self, query: Optional[str], limit: int = 10) -> List[Dict]:
        """Free-text place search, ranked as the upstream returns them."""
        q = (query or "").strip()
        if not q:
            return []

        params = {
            "q": q,
            "format": "json",
            "limit": int(limit),
            "addressdetails": 1,
            "extratags": 1,
        }
        try:
            resp = requests.get(
                self.place_search_url,
                params=params,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Error searching places: {e}")
            return []

        if resp.status_code != 200:
            logger.warning(f"Place search API error: {resp.status_code}")
            return []

        try:
            data = resp.json() or []
        except ValueError:
            logger.warning("Place search returned invalid JSON")
            return []

        places: List[Dict] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            places.append({
                "place_id": item.get("place_id"),
                "display_name": item.get("display_name"),
                "lat": item.get("lat"),
                "lon": item.get("lon"),
                "type": item.get("type"),
                "category": item.get("category") or item.get("class"),
                "importance": item.get("importance") or 0,
            })
        return places

    def coordinates_for(self, report: Dict) -> Optional[Coordinates]:
        """Display coordinates: the stored point if there is one, else the postcode."""
        stored = parse_point(report.get("location"))
        if stored is not None:
            return stored
        return self.lookup(report.get("postcode"))
