# MongoDB persistence for reports and municipal reference data

import logging
import re
from typing import List, Optional, Dict, Any, Tuple

from pymongo import MongoClient, ReturnDocument, ASCENDING, DESCENDING, GEOSPHERE

from . import config

logger = logging.getLogger(__name__)

REPORT_ID_RE = re.compile(r"^([A-Z]{4})-(\d+)$")

# Report fields that hold a media handle id
MEDIA_FIELDS = ("voice_message.id", "image.id", "resolution_evidence.image.id")


def geojson_point(longitude: float, latitude: float) -> dict:
    return {"type": "Point", "coordinates": [longitude, latitude]}


class MongoStore:
    """Collection access used by the triage engine.

    Reports are written with ``replace_if_version`` only: the stored
    ``version`` must still match the one that was read, otherwise the write is
    refused and the caller replays its mutation on a fresh copy.
    """

    def __init__(self, db):
        self.db = db
        self.reports = db.reports
        self.municipalities = db.municipalities
        self.departments = db.departments
        self.counters = db.counters

    @classmethod
    def connect(cls, url: str = config.MONGODB_URL, name: str = config.MONGODB_DB) -> "MongoStore":
        client = MongoClient(url, tz_aware=True)
        return cls(client[name])

    def close(self):
        self.db.client.close()

    def ping(self) -> bool:
        self.db.client.admin.command("ping")
        return True

    def create_indexes(self):
        self.reports.create_index("report_id", unique=True)
        self.reports.create_index([("location", GEOSPHERE)])
        self.reports.create_index([("municipality", ASCENDING), ("status", ASCENDING),
                                   ("priority", DESCENDING), ("created_at", DESCENDING)])
        self.reports.create_index([("department", ASCENDING), ("status", ASCENDING),
                                   ("priority", DESCENDING)])
        self.reports.create_index([("priority", DESCENDING), ("urgency", ASCENDING),
                                   ("upvote_count", DESCENDING)])
        self.reports.create_index("reported_by")
        self.reports.create_index("upvotes.user_id")
        for field in MEDIA_FIELDS:
            self.reports.create_index(field, sparse=True)
        self.municipalities.create_index([("location", GEOSPHERE)])
        self.municipalities.create_index("district")
        self.departments.create_index([("municipality", ASCENDING), ("categories", ASCENDING)])
        logger.info("Database indexes ensured")

    # -----------------------------------------------------------------------
    # Reference data
    # -----------------------------------------------------------------------
    def nearest_municipality(self, point: Tuple[float, float], max_distance: int) -> Optional[dict]:
        longitude, latitude = point
        return self.municipalities.find_one({
            "location": {
                "$near": {
                    "$geometry": geojson_point(longitude, latitude),
                    "$maxDistance": max_distance,
                }
            }
        })

    def municipality_by_district(self, district: str) -> Optional[dict]:
        if not district:
            return None
        return self.municipalities.find_one(
            {"district": {"$regex": re.escape(district), "$options": "i"}})

    def get_municipality(self, municipality_id: str) -> Optional[dict]:
        return self.municipalities.find_one({"_id": municipality_id})

    def department_for_category(self, municipality_id: str, category: str) -> Optional[dict]:
        return self.departments.find_one({"municipality": municipality_id, "categories": category})

    def get_department(self, department_id: str) -> Optional[dict]:
        return self.departments.find_one({"_id": department_id})

    def attach_report_to_department(self, department_id: str, report_key: str):
        self.departments.update_one({"_id": department_id}, {"$addToSet": {"reports": report_key}})

    def detach_report_from_department(self, department_id: str, report_key: str):
        self.departments.update_one({"_id": department_id}, {"$pull": {"reports": report_key}})

    # -----------------------------------------------------------------------
    # Reports
    # -----------------------------------------------------------------------
    def next_sequence(self, name: str) -> int:
        counter = self.counters.find_one_and_update(
            {"_id": name}, {"$inc": {"seq": 1}},
            upsert=True, return_document=ReturnDocument.AFTER)
        return counter["seq"]

    def sync_sequences(self) -> Dict[str, int]:
        """Raise every per-category counter to the highest report id already stored."""
        highest: Dict[str, int] = {}
        for doc in self.reports.find({}, {"report_id": 1}):
            match = REPORT_ID_RE.match(doc.get("report_id") or "")
            if match:
                code, seq = match.group(1), int(match.group(2))
                highest[code] = max(highest.get(code, 0), seq)
        for code, seq in highest.items():
            self.counters.update_one({"_id": f"report:{code}"}, {"$max": {"seq": seq}}, upsert=True)
        return highest

    def insert_report(self, doc: dict):
        self.reports.insert_one(doc)

    def get_report(self, report_id: str) -> Optional[dict]:
        return self.reports.find_one({"report_id": report_id})

    def replace_if_version(self, doc: dict, expected_version: int) -> bool:
        result = self.reports.replace_one({"_id": doc["_id"], "version": expected_version}, doc)
        return result.matched_count == 1

    def report_for_media(self, media_id: str) -> Optional[dict]:
        return self.reports.find_one({"$or": [{field: media_id} for field in MEDIA_FIELDS]})

    def delete_report(self, report_id: str) -> bool:
        return self.reports.delete_one({"report_id": report_id}).deleted_count == 1

    def find_reports(self, query: Dict[str, Any], sort: List[Tuple[str, int]],
                     skip: int, limit: int) -> List[dict]:
        return list(self.reports.find(query).sort(sort).skip(skip).limit(limit))

    def count_reports(self, query: Dict[str, Any]) -> int:
        return self.reports.count_documents(query)

    def report_overview(self, query: Dict[str, Any]) -> Dict[str, Any]:
        status_rows = list(self.reports.aggregate([
            {"$match": query},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}}]))
        totals = list(self.reports.aggregate([
            {"$match": query},
            {"$group": {"_id": None, "total": {"$sum": 1},
                        "avg_rating": {"$avg": "$rating"},
                        "total_upvotes": {"$sum": "$upvote_count"},
                        "avg_priority": {"$avg": "$priority"}}}]))
        overview = totals[0] if totals else {}
        return {
            "total_reports": overview.get("total", 0),
            "status_distribution": {row["_id"]: row["count"] for row in status_rows},
            "avg_rating": overview.get("avg_rating"),
            "total_upvotes": overview.get("total_upvotes", 0),
            "avg_priority": overview.get("avg_priority") or 0.0,
        }

    def category_stats(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = self.reports.aggregate([
            {"$match": query},
            {"$group": {"_id": "$category", "count": {"$sum": 1},
                        "avg_priority": {"$avg": "$priority"}}},
            {"$sort": {"count": -1}}])
        return [{"category": r["_id"], "count": r["count"],
                 "avg_priority": round(r.get("avg_priority") or 0.0, 2)} for r in rows]
