# Jurisdiction resolution and department routing

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import requests

from . import config
from .errors import NoJurisdictionFound, UpstreamDegraded
from .models import AssignmentType, Category, SelectionMethod

logger = logging.getLogger(__name__)

Point = Tuple[float, float]  # (longitude, latitude)

# Components checked on the first geocoder result, in order of preference
DISTRICT_COMPONENTS = ("state_district", "county", "district")

# ---------------------------------------------------------------------------
# Reverse geocoding
# ---------------------------------------------------------------------------
class GeocodeStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"

@dataclass(frozen=True)
class GeocodeOutcome:
    status: GeocodeStatus
    district: Optional[str] = None
    reason: Optional[str] = None


class ReverseGeocoder:
    """OpenCage reverse geocoding, reduced to the district a point lies in.

    Never raises: transport errors, timeouts, bad payloads and a missing API
    key all come back as ``GeocodeStatus.UNAVAILABLE``.
    """

    def __init__(self, api_key: Optional[str] = None, url: str = config.GEOCODER_URL,
                 country_code: Optional[str] = config.GEOCODER_COUNTRY_CODE,
                 timeout: float = config.GEOCODER_TIMEOUT, session=None):
        self.api_key = api_key
        self.url = url
        self.country_code = country_code
        self.timeout = timeout
        self.session = session or requests.Session()

    def lookup(self, point: Point) -> GeocodeOutcome:
        try:
            payload = self._fetch(point)
        except UpstreamDegraded as e:
            logger.warning("Reverse geocoding unavailable for %s: %s", point, e.message)
            return GeocodeOutcome(GeocodeStatus.UNAVAILABLE, reason=e.message)

        results = payload.get("results") or []
        if not results:
            logger.info("Reverse geocoding returned no results for %s", point)
            return GeocodeOutcome(GeocodeStatus.NOT_FOUND)
        components = results[0].get("components") or {}
        for key in DISTRICT_COMPONENTS:
            district = components.get(key)
            if district:
                logger.info("Reverse geocoded %s to district %r (%s)", point, district, key)
                return GeocodeOutcome(GeocodeStatus.FOUND, district=district)
        return GeocodeOutcome(GeocodeStatus.NOT_FOUND)

    def _fetch(self, point: Point) -> dict:
        if not self.api_key:
            raise UpstreamDegraded("OPENCAGE_API_KEY is not set")
        longitude, latitude = point
        params = {
            "q": f"{latitude},{longitude}",
            "key": self.api_key,
            "language": "en",
            "no_annotations": 1,
        }
        if self.country_code:
            params["countrycode"] = self.country_code
        try:
            r = self.session.get(self.url, params=params, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except requests.Timeout:
            raise UpstreamDegraded(f"timed out after {self.timeout}s")
        except (requests.RequestException, ValueError) as e:
            raise UpstreamDegraded(str(e))
        if not isinstance(data, dict):
            raise UpstreamDegraded("unexpected response body")
        return data

# ---------------------------------------------------------------------------
# Jurisdiction resolver
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Jurisdiction:
    municipality: dict
    method: SelectionMethod
    district: Optional[str] = None


class JurisdictionResolver:
    """Finds the municipality that owns a point.

    1. nearest municipality centre within ``max_distance`` metres,
    2. otherwise the district reported by the reverse geocoder, matched
       case-insensitively against stored municipality districts,
    3. otherwise ``NoJurisdictionFound``.
    """

    def __init__(self, store, geocoder: ReverseGeocoder,
                 max_distance: int = config.JURISDICTION_RADIUS_M):
        self.store = store
        self.geocoder = geocoder
        self.max_distance = max_distance

    def resolve(self, point: Point) -> Jurisdiction:
        municipality = self.store.nearest_municipality(point, self.max_distance)
        if municipality:
            logger.info("Point %s resolved to %s (nearest)", point, municipality.get("name"))
            return Jurisdiction(municipality, SelectionMethod.NEAREST)

        logger.info("No municipality within %dm of %s, trying reverse geocoding", self.max_distance, point)
        outcome = self.geocoder.lookup(point)
        if outcome.status == GeocodeStatus.FOUND:
            municipality = self.store.municipality_by_district(outcome.district)
            if municipality:
                logger.info("Point %s resolved to %s via district %r",
                            point, municipality.get("name"), outcome.district)
                return Jurisdiction(municipality, SelectionMethod.DISTRICT, district=outcome.district)
            logger.info("No municipality registered for district %r", outcome.district)

        raise NoJurisdictionFound("No municipality found for this location. Please contact support.")

# ---------------------------------------------------------------------------
# Department routing
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Routing:
    department: Optional[dict]
    assignment_type: AssignmentType


class AssignmentRouter:
    def __init__(self, store):
        self.store = store

    def route(self, municipality: dict, category: Category) -> Routing:
        # "Other" always waits for manual triage
        if category == Category.OTHER:
            return Routing(None, AssignmentType.PENDING)
        department = self.store.department_for_category(municipality["_id"], category.value)
        if department is None:
            logger.info("No department in %s handles %s", municipality.get("name"), category.value)
            return Routing(None, AssignmentType.PENDING)
        return Routing(department, AssignmentType.AUTOMATIC)
