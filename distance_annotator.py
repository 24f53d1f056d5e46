# distance_annotator.py - Travel distance estimates for job cards
#
# Pipeline per job: normalize address -> geocode ladder (Nominatim) -> driving
# distance (OSRM) -> haversine fallback -> round to 0.1 km -> cache by job id.

import math
import random
import re
import threading
import time

import requests

from logger_config import get_logger

logger = get_logger("distance")

EARTH_RADIUS_KM = 6371.0
DEFAULT_BOUNDING_BOX = (42.0, 46.0, -83.0, -75.0)

_FLOOR_SUITE_RE = re.compile(r'[-–]?\s*\d+(st|nd|rd|th)?\s*(FLR|Fl|Floor|Suite|Unit|Ste)\.?\s*\d*', re.IGNORECASE)
_UNIT_MARKER_RE = re.compile(r'#\d+')
_COUNTRY_RE = re.compile(r'\s+CA\s+', re.IGNORECASE)
_PROVINCE_RE = re.compile(r'\s+ON\s+', re.IGNORECASE)
_POSTAL_RE = re.compile(r'([A-Z]\d[A-Z])\s?(\d[A-Z]\d)', re.IGNORECASE)
_STREET_TAIL_RE = re.compile(r'(-|\s)\d+(th|rd|nd|st).*', re.IGNORECASE)


def haversine_km(lat1, lon1, lat2, lon2):
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def clean_address(address):
    """Drop floor/suite/unit tokens and expand CA/ON for the geocoder."""
    text = _FLOOR_SUITE_RE.sub('', address or '')
    text = _UNIT_MARKER_RE.sub('', text, count=1)
    text = _COUNTRY_RE.sub(', Canada ', text)
    text = _PROVINCE_RE.sub(' Ontario ', text)
    return text.strip()


def extract_postal_code(address):
    match = _POSTAL_RE.search(address or '')
    if not match:
        return None
    return f"{match.group(1)} {match.group(2)}".upper()


def extract_street(address):
    head = (address or '').split(',', 1)[0]
    return _STREET_TAIL_RE.sub('', head).strip()


def build_geocode_queries(address):
    """Queries from most to least specific."""
    queries = []
    postal = extract_postal_code(address)
    if postal:
        queries.append(f"{postal}, Ontario, Canada")
        queries.append(f"{postal}, Canada")
    cleaned = clean_address(address)
    if cleaned:
        queries.append(cleaned)
    street = extract_street(address)
    if street:
        queries.append(f"{street}, Ontario, Canada")
    return queries


def within_bounds(lat, lng, bounding_box=DEFAULT_BOUNDING_BOX):
    min_lat, max_lat, min_lng, max_lng = bounding_box
    return min_lat <= lat <= max_lat and min_lng <= lng <= max_lng


class DistanceCache:
    """Per-board cache of rounded distances keyed by job id. `None` values mean "not found"."""

    def __init__(self):
        self._values = {}
        self._lock = threading.Lock()
        self.in_progress = False

    def __contains__(self, job_id):
        with self._lock:
            return job_id in self._values

    def __len__(self):
        with self._lock:
            return len(self._values)

    def get(self, job_id):
        with self._lock:
            return self._values.get(job_id)

    def set(self, job_id, distance):
        with self._lock:
            self._values[job_id] = distance

    def as_dict(self):
        with self._lock:
            return dict(self._values)


class NominatimGeocoder:
    def __init__(self, base_url="https://nominatim.openstreetmap.org/search",
                 user_agent="FM-Logistics-App/2.0", bounding_box=DEFAULT_BOUNDING_BOX,
                 min_delay=1.0, max_delay=1.5, attempts=2, backoff_seconds=2.5,
                 timeout_seconds=20, sleep=time.sleep, jitter=random.uniform):
        self.base_url = base_url
        self.user_agent = user_agent
        self.bounding_box = bounding_box
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.attempts = max(1, int(attempts))
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep
        self.jitter = jitter
        self.requests_made = 0

    def _search(self, query):
        """Returns (done, coords). done=False means the attempt failed and may be retried."""
        self.requests_made += 1
        try:
            resp = requests.get(
                self.base_url,
                params={"format": "json", "q": query, "limit": 1, "countrycodes": "ca"},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as exc:
            logger.warning(f"[GEOCODE] Request error for '{query}': {exc}")
            return False, None
        if not resp.ok:
            logger.warning(f"[GEOCODE] Failed: {resp.status_code} for '{query}'")
            return False, None
        try:
            data = resp.json()
        except ValueError:
            logger.warning(f"[GEOCODE] Invalid JSON for '{query}': {resp.text[:50]}...")
            return False, None

        if not data:
            return True, None
        try:
            lat = float(data[0]["lat"])
            lng = float(data[0]["lon"])
        except (KeyError, TypeError, ValueError):
            return True, None
        if not within_bounds(lat, lng, self.bounding_box):
            logger.info(f"[GEOCODE] '{query}' resolved outside bounding box ({lat}, {lng}); ignoring")
            return True, None
        logger.info(f"[GEOCODE] Found '{data[0].get('display_name', query)}' at ({lat}, {lng})")
        return True, (lat, lng)

    def geocode(self, address):
        for query in build_geocode_queries(address):
            self.sleep(self.jitter(self.min_delay, self.max_delay))
            for attempt in range(1, self.attempts + 1):
                if attempt > 1:
                    self.sleep(self.backoff_seconds * attempt)
                done, coords = self._search(query)
                if coords:
                    return coords
                if done:
                    break
        logger.info(f"[GEOCODE] No valid results for '{address}'")
        return None


class OsrmRouter:
    def __init__(self, base_url="https://router.project-osrm.org/route/v1/driving",
                 delay_seconds=0.5, timeout_seconds=20, sleep=time.sleep):
        self.base_url = base_url.rstrip("/")
        self.delay_seconds = delay_seconds
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep

    def driving_distance_km(self, origin, destination):
        lat1, lon1 = origin
        lat2, lon2 = destination
        url = f"{self.base_url}/{lon1},{lat1};{lon2},{lat2}"
        self.sleep(self.delay_seconds)
        try:
            resp = requests.get(url, params={"overview": "false"}, timeout=self.timeout_seconds)
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning(f"[ROUTING] OSRM error: {exc}")
            return None
        if not isinstance(data, dict):
            return None
        routes = data.get("routes") or []
        if data.get("code") != "Ok" or not routes:
            return None
        try:
            return float(routes[0]["distance"]) / 1000
        except (KeyError, TypeError, ValueError):
            logger.warning(f"[ROUTING] OSRM route without a distance: {routes[0]!r}")
            return None


def round_tenth(value):
    """Nearest 0.1 km, halves rounded up."""
    return math.floor(value * 10 + 0.5) / 10


class DistanceAnnotator:
    """Sequentially computes distances from an origin to each job's address."""

    def __init__(self, geocoder, router=None):
        self.geocoder = geocoder
        self.router = router

    def distance_for_address(self, origin, address):
        if not str(address or "").strip():
            return None
        coords = self.geocoder.geocode(address)
        if not coords:
            return None
        distance = None
        if self.router is not None:
            distance = self.router.driving_distance_km(origin, coords)
        if distance is None:
            distance = haversine_km(origin[0], origin[1], coords[0], coords[1])
            logger.info(f"[ROUTING] Fallback to straight-line distance for '{address}'")
        return round_tenth(distance)

    def annotate(self, jobs, origin, cache, force=False, on_result=None, run_logger=None):
        """
        Fill `cache` for every job and return {job_id: distance}.
        Cached jobs are skipped unless `force` is set (new device fix).
        """
        log = run_logger or logger
        results = {}
        cache.in_progress = True
        try:
            for job in jobs:
                job_id = job.get("id")
                if not force and job_id in cache:
                    results[job_id] = cache.get(job_id)
                    continue
                try:
                    distance = self.distance_for_address(origin, job.get("address"))
                except Exception as exc:
                    log.warning(f"[DISTANCE] {job.get('company_name') or job_id}: {exc}")
                    distance = None
                cache.set(job_id, distance)
                results[job_id] = distance
                log.info(f"[DISTANCE] {job.get('company_name') or job_id}: "
                         f"{'unavailable' if distance is None else f'{distance} km'}")
                if on_result:
                    on_result(job_id, distance)
        finally:
            cache.in_progress = False
        return results


def build_distance_annotator(app_settings, sleep=time.sleep):
    timeout = app_settings.request_timeout_seconds
    geocoder = NominatimGeocoder(
        base_url=app_settings.advanced("geocoder_url", "https://nominatim.openstreetmap.org/search"),
        user_agent=app_settings.advanced("geocoder_user_agent", "FM-Logistics-App/2.0"),
        bounding_box=app_settings.bounding_box,
        min_delay=app_settings.advanced_float("geocode_min_delay_seconds", 1.0),
        max_delay=app_settings.advanced_float("geocode_max_delay_seconds", 1.5),
        attempts=app_settings.advanced_int("geocode_attempts", 2),
        backoff_seconds=app_settings.advanced_float("geocode_backoff_seconds", 2.5),
        timeout_seconds=timeout,
        sleep=sleep,
    )
    router = None
    if app_settings.feature_flags.use_osrm_routing:
        router = OsrmRouter(
            base_url=app_settings.advanced("routing_url", "https://router.project-osrm.org/route/v1/driving"),
            delay_seconds=app_settings.advanced_float("routing_delay_seconds", 0.5),
            timeout_seconds=timeout,
            sleep=sleep,
        )
    return DistanceAnnotator(geocoder, router)
