"""
Shared pytest fixtures for the civic report triage test suite.

Everything runs in-process against an in-memory stand-in for MongoStore, a
stub reverse geocoder and a fake media store, so no MongoDB, GridFS or
OpenCage credentials are needed.
"""

import os
import re
import copy
import math
from datetime import datetime, timedelta, timezone

# Config refuses to import without a strong secret
os.environ.setdefault("JWT_SECRET", "test-secret-that-is-definitely-long-enough-0123456789")

import pytest
import pytest_asyncio
import httpx
from jose import jwt

from civicdesk import config
from civicdesk.errors import NotFound
from civicdesk.jurisdiction import (
    AssignmentRouter, GeocodeOutcome, GeocodeStatus, JurisdictionResolver,
)
from civicdesk.lifecycle import ReportLifecycle, media_ids
from civicdesk.models import Principal, UserRole
from civicdesk.server import app, get_lifecycle, get_media, limiter

RANCHI = "mun-ranchi"
DHANBAD = "mun-dhanbad"
RANCHI_WORKS = "dept-ranchi-works"
RANCHI_SANITATION = "dept-ranchi-sanitation"
DHANBAD_WATER = "dept-dhanbad-water"

RANCHI_POINT = (85.3150, 23.3500)      # ~1 km from the Ranchi centre
DHANBAD_POINT = (86.4300, 23.8000)
REMOTE_POINT = (84.0000, 22.0000)      # far from every municipality centre


# ═══════════════════════════════════════════════════════════════════════════════
# IN-MEMORY STORE
# ═══════════════════════════════════════════════════════════════════════════════

def _haversine_m(a, b):
    lon1, lat1, lon2, lat2 = map(math.radians, (*a, *b))
    h = (math.sin((lat2 - lat1) / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2)
    return 2 * 6371000 * math.asin(math.sqrt(h))


def _matches(doc, query):
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in expected):
                return False
        elif key == "$and":
            if not all(_matches(doc, sub) for sub in expected):
                return False
        elif isinstance(expected, dict) and "$in" in expected:
            if doc.get(key) not in expected["$in"]:
                return False
        elif isinstance(expected, dict) and "$ne" in expected:
            if doc.get(key) == expected["$ne"]:
                return False
        elif isinstance(expected, dict) and "$regex" in expected:
            flags = re.IGNORECASE if "i" in expected.get("$options", "") else 0
            if not re.search(expected["$regex"], doc.get(key) or "", flags):
                return False
        elif doc.get(key) != expected:
            return False
    return True


class MemoryStore:
    """Implements the MongoStore surface the engine uses, with deep copies on
    every read and write so callers cannot mutate stored state by accident."""

    def __init__(self):
        self.municipalities = {}
        self.departments = {}
        self.reports = {}
        self.counters = {}
        self.lose_next_writes = 0
        self.write_attempts = 0

    # -- reference data -----------------------------------------------------
    def add_municipality(self, _id, name, district, coordinates):
        self.municipalities[_id] = {
            "_id": _id, "name": name, "district": district, "state": "Jharkhand",
            "location": {"type": "Point", "coordinates": list(coordinates)}}

    def add_department(self, _id, name, municipality, categories, staff_members=()):
        self.departments[_id] = {
            "_id": _id, "name": name, "municipality": municipality,
            "categories": list(categories), "staff_members": list(staff_members),
            "reports": []}

    def nearest_municipality(self, point, max_distance):
        candidates = [(_haversine_m(point, m["location"]["coordinates"]), m)
                      for m in self.municipalities.values()]
        candidates = [c for c in candidates if c[0] <= max_distance]
        if not candidates:
            return None
        return copy.deepcopy(min(candidates, key=lambda c: c[0])[1])

    def municipality_by_district(self, district):
        for m in self.municipalities.values():
            if district and district.lower() in m["district"].lower():
                return copy.deepcopy(m)
        return None

    def get_municipality(self, municipality_id):
        return copy.deepcopy(self.municipalities.get(municipality_id))

    def department_for_category(self, municipality_id, category):
        for d in self.departments.values():
            if d["municipality"] == municipality_id and category in d["categories"]:
                return copy.deepcopy(d)
        return None

    def get_department(self, department_id):
        return copy.deepcopy(self.departments.get(department_id))

    def attach_report_to_department(self, department_id, report_key):
        reports = self.departments[department_id]["reports"]
        if report_key not in reports:
            reports.append(report_key)

    def detach_report_from_department(self, department_id, report_key):
        reports = self.departments[department_id]["reports"]
        if report_key in reports:
            reports.remove(report_key)

    # -- reports --------------------------------------------------------------
    def next_sequence(self, name):
        self.counters[name] = self.counters.get(name, 0) + 1
        return self.counters[name]

    def insert_report(self, doc):
        self.reports[doc["report_id"]] = copy.deepcopy(doc)

    def get_report(self, report_id):
        return copy.deepcopy(self.reports.get(report_id))

    def replace_if_version(self, doc, expected_version):
        self.write_attempts += 1
        current = self.reports.get(doc["report_id"])
        if current is None or current.get("version", 0) != expected_version:
            return False
        if self.lose_next_writes:
            # simulate another writer landing first
            self.lose_next_writes -= 1
            current["version"] = expected_version + 1
            return False
        self.reports[doc["report_id"]] = copy.deepcopy(doc)
        return True

    def report_for_media(self, media_id):
        for doc in self.reports.values():
            if media_id in media_ids(doc):
                return copy.deepcopy(doc)
        return None

    def delete_report(self, report_id):
        return self.reports.pop(report_id, None) is not None

    def find_reports(self, query, sort, skip, limit):
        docs = [d for d in self.reports.values() if _matches(d, query)]
        for field, direction in reversed(sort):
            docs.sort(key=lambda d: d.get(field), reverse=direction < 0)
        return copy.deepcopy(docs[skip:skip + limit])

    def count_reports(self, query):
        return sum(1 for d in self.reports.values() if _matches(d, query))

    def report_overview(self, query):
        docs = [d for d in self.reports.values() if _matches(d, query)]
        distribution = {}
        for d in docs:
            distribution[d["status"]] = distribution.get(d["status"], 0) + 1
        ratings = [d["rating"] for d in docs if d.get("rating") is not None]
        return {
            "total_reports": len(docs),
            "status_distribution": distribution,
            "avg_rating": sum(ratings) / len(ratings) if ratings else None,
            "total_upvotes": sum(d["upvote_count"] for d in docs),
            "avg_priority": sum(d["priority"] for d in docs) / len(docs) if docs else 0.0,
        }

    def category_stats(self, query):
        groups = {}
        for d in self.reports.values():
            if _matches(d, query):
                groups.setdefault(d["category"], []).append(d["priority"])
        rows = [{"category": c, "count": len(p), "avg_priority": round(sum(p) / len(p), 2)}
                for c, p in groups.items()]
        return sorted(rows, key=lambda r: -r["count"])


# ═══════════════════════════════════════════════════════════════════════════════
# COLLABORATOR FAKES
# ═══════════════════════════════════════════════════════════════════════════════

class StubGeocoder:
    def __init__(self, outcome=None):
        self.outcome = outcome or GeocodeOutcome(GeocodeStatus.NOT_FOUND)
        self.calls = []

    def lookup(self, point):
        self.calls.append(point)
        return self.outcome


class FakeGridOut:
    def __init__(self, data, content_type):
        self._data = data
        self.content_type = content_type

    def read(self):
        return self._data


class FakeMediaStore:
    def __init__(self):
        self.files = {}
        self.deleted = []
        self._next = 0

    def store(self, data, filename, content_type, kind):
        self._next += 1
        media_id = f"{kind}-{self._next}"
        self.files[media_id] = (data, content_type)
        return {"url": f"/media/{media_id}", "id": media_id}

    def open(self, media_id):
        if media_id not in self.files:
            raise NotFound("Media not found")
        return FakeGridOut(*self.files[media_id])

    def delete(self, media_id):
        if media_id:
            self.deleted.append(media_id)
            self.files.pop(media_id, None)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def store():
    s = MemoryStore()
    s.add_municipality(RANCHI, "Ranchi Municipal Corporation", "Ranchi", (85.3096, 23.3441))
    s.add_municipality(DHANBAD, "Dhanbad Municipal Corporation", "Dhanbad", (86.4304, 23.7957))
    s.add_department(RANCHI_WORKS, "Public Works", RANCHI, ["Infrastructure", "Traffic"],
                     staff_members=["staff-works"])
    s.add_department(RANCHI_SANITATION, "Sanitation", RANCHI, ["Sanitation"],
                     staff_members=["staff-sanitation"])
    s.add_department(DHANBAD_WATER, "Water Supply", DHANBAD, ["Water Supply"])
    return s


@pytest.fixture
def geocoder():
    return StubGeocoder()


@pytest.fixture
def media():
    return FakeMediaStore()


@pytest.fixture
def clock():
    return Clock(datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def lifecycle(store, geocoder, media, clock):
    return ReportLifecycle(store, JurisdictionResolver(store, geocoder),
                           AssignmentRouter(store), media, clock=clock)


@pytest.fixture
def citizen():
    return Principal(id="citizen-1", role=UserRole.CITIZEN)


@pytest.fixture
def other_citizen():
    return Principal(id="citizen-2", role=UserRole.CITIZEN)


@pytest.fixture
def staff():
    return Principal(id="staff-works", role=UserRole.STAFF, department=RANCHI_WORKS)


@pytest.fixture
def other_staff():
    return Principal(id="staff-sanitation", role=UserRole.STAFF, department=RANCHI_SANITATION)


@pytest.fixture
def admin():
    return Principal(id="admin-1", role=UserRole.ADMIN)


@pytest.fixture
def make_report(lifecycle, citizen):
    """Create a report with sensible defaults; keyword overrides win."""
    def _make(**overrides):
        fields = {"reporter": citizen, "title": "Pothole on Main Road",
                  "category": "Infrastructure", "point": RANCHI_POINT,
                  "urgency": "high", "description": "Deep pothole near the bus stop"}
        fields.update(overrides)
        return lifecycle.create_report(**fields).report
    return _make


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP CLIENT
# ═══════════════════════════════════════════════════════════════════════════════

def auth_headers(principal: Principal) -> dict:
    claims = {"sub": principal.id, "role": principal.role.value}
    if principal.department:
        claims["department"] = principal.department
    token = jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(lifecycle, media):
    """In-process httpx AsyncClient wired to the in-memory collaborators."""
    limiter.enabled = False
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[get_media] = lambda: media
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()
