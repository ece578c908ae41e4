# Report lifecycle: creation, triage, status transitions, votes and feedback

import re
import math
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from . import config
from .errors import (
    AlreadyVoted, BadRating, BadRequest, Conflict, Forbidden, InvalidTransition,
    NotFound, NotResolved, ReportResolved,
)
from .jurisdiction import AssignmentRouter, Jurisdiction, JurisdictionResolver, Routing
from .models import (
    AssignmentType, Principal, ReportStatus, TERMINAL_STATUSES, PUBLIC_STATUSES,
    parse_category, parse_status, parse_urgency,
)
from .priority import score_report
from .store import geojson_point

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ReportStatus.PENDING_ASSIGNMENT: {ReportStatus.REJECTED},
    ReportStatus.ASSIGNED: {ReportStatus.IN_PROGRESS, ReportStatus.REJECTED},
    ReportStatus.IN_PROGRESS: {ReportStatus.RESOLVED, ReportStatus.REJECTED},
}

SORT_FIELDS = {"priority", "created_at", "upvote_count", "updated_at"}
MAX_PAGE_SIZE = 100
MAX_SEARCH_LENGTH = 100
SEARCH_FIELDS = ("title", "description", "report_id")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())

# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------
def parse_point(longitude, latitude) -> Tuple[float, float]:
    """Coordinates arrive as numbers or form strings; both must be finite."""
    if longitude is None or latitude is None:
        raise BadRequest("Location coordinates are required")
    try:
        lon, lat = float(longitude), float(latitude)
    except (TypeError, ValueError):
        raise BadRequest("Coordinates must be valid numbers")
    if not (math.isfinite(lon) and math.isfinite(lat)):
        raise BadRequest("Coordinates must be valid numbers")
    if not -180 <= lon <= 180:
        raise BadRequest("Longitude must be between -180 and 180")
    if not -90 <= lat <= 90:
        raise BadRequest("Latitude must be between -90 and 90")
    return lon, lat


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _non_negative(value, field: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{field} must be a number")
    if not math.isfinite(number) or number < 0:
        raise BadRequest(f"{field} must be a non-negative number")
    return number


def media_ids(report: dict) -> List[str]:
    """Every external media handle referenced by a report."""
    refs = [report.get("voice_message"), report.get("image"),
            (report.get("resolution_evidence") or {}).get("image")]
    return [ref["id"] for ref in refs if ref and ref.get("id")]

# ---------------------------------------------------------------------------
# Versioned writes
# ---------------------------------------------------------------------------
class ReportWriter:
    """Read-modify-write of a single report under optimistic concurrency.

    ``change(report, now)`` mutates the freshly loaded document in place and
    may raise to abort before anything is written. A lost race re-reads the
    report and replays ``change`` on the new state.
    """

    def __init__(self, store, clock: Callable[[], datetime] = now_utc,
                 max_retries: int = config.MAX_WRITE_RETRIES):
        self.store = store
        self.clock = clock
        self.max_retries = max_retries

    def load(self, report_id: str) -> dict:
        report = self.store.get_report(report_id)
        if report is None:
            raise NotFound("Report not found")
        return report

    def mutate(self, report_id: str, change: Callable[[dict, datetime], None]) -> dict:
        for attempt in range(1, self.max_retries + 1):
            report = self.load(report_id)
            version = report.get("version", 0)
            now = self.clock()
            change(report, now)
            report["version"] = version + 1
            report["updated_at"] = now
            if self.store.replace_if_version(report, version):
                return report
            logger.warning("Concurrent update on %s (attempt %d/%d), retrying",
                           report_id, attempt, self.max_retries)
        raise Conflict("Report is being modified concurrently, please retry")

# ---------------------------------------------------------------------------
# Upvotes
# ---------------------------------------------------------------------------
class UpvoteLedger:
    """At most one vote per citizen per report; every change rescores."""

    def __init__(self, writer: ReportWriter):
        self.writer = writer

    def add_vote(self, report_id: str, voter_id: str) -> dict:
        def change(report, now):
            if report["status"] == ReportStatus.RESOLVED.value:
                raise ReportResolved("Cannot upvote resolved reports")
            if any(v["user_id"] == voter_id for v in report["upvotes"]):
                raise AlreadyVoted("User has already upvoted this report")
            report["upvotes"].append({"user_id": voter_id, "upvoted_at": now})
            report["upvote_count"] = len(report["upvotes"])
            score_report(report, now)

        report = self.writer.mutate(report_id, change)
        logger.info("Upvote on %s by %s (count=%d, priority=%d)",
                    report_id, voter_id, report["upvote_count"], report["priority"])
        return report

    def remove_vote(self, report_id: str, voter_id: str) -> dict:
        def change(report, now):
            report["upvotes"] = [v for v in report["upvotes"] if v["user_id"] != voter_id]
            report["upvote_count"] = len(report["upvotes"])
            score_report(report, now)

        return self.writer.mutate(report_id, change)

# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CreatedReport:
    report: dict
    jurisdiction: Jurisdiction
    routing: Routing


class ReportLifecycle:
    def __init__(self, store, resolver: JurisdictionResolver, router: AssignmentRouter,
                 media=None, clock: Callable[[], datetime] = now_utc,
                 max_retries: int = config.MAX_WRITE_RETRIES):
        self.store = store
        self.resolver = resolver
        self.router = router
        self.media = media
        self.clock = clock
        self.writer = ReportWriter(store, clock, max_retries)
        self.ledger = UpvoteLedger(self.writer)

    # -- permissions --------------------------------------------------------
    @staticmethod
    def _check_can_view(report: dict, actor: Principal):
        if actor.is_admin or report["reported_by"] == actor.id:
            return
        if actor.is_staff and actor.department and report.get("department") == actor.department:
            return
        raise Forbidden("Access denied")

    @staticmethod
    def _check_can_operate(report: dict, actor: Principal):
        if actor.is_admin:
            return
        if not actor.is_staff:
            raise Forbidden("Only department staff or administrators can update reports")
        if not actor.department or report.get("department") != actor.department:
            raise Forbidden("You can only update reports from your department")

    @staticmethod
    def _append_update(report: dict, message: str, actor: Principal, now: datetime,
                       status: Optional[ReportStatus] = None):
        report["updates"].append({
            "id": new_id(), "message": message, "updated_by": actor.id,
            "date": now, "status": status.value if status else None})

    # -- creation -----------------------------------------------------------
    def create_report(self, reporter: Principal, title: str, category, point,
                      urgency=None, description: Optional[str] = None,
                      voice_message: Optional[dict] = None, image: Optional[dict] = None,
                      address: Optional[str] = None) -> CreatedReport:
        title = _clean_text(title)
        if not title:
            raise BadRequest("Title and category are required")
        category = parse_category(category)
        urgency = parse_urgency(urgency)
        description = _clean_text(description)
        if not description and not voice_message:
            raise BadRequest("Either description or voice message is required")
        longitude, latitude = parse_point(*point)

        jurisdiction = self.resolver.resolve((longitude, latitude))
        routing = self.router.route(jurisdiction.municipality, category)

        seq = self.store.next_sequence(f"report:{category.code}")
        now = self.clock()
        status = (ReportStatus.ASSIGNED if routing.assignment_type == AssignmentType.AUTOMATIC
                  else ReportStatus.PENDING_ASSIGNMENT)
        report = {
            "_id": new_id(), "report_id": f"{category.code}-{seq:03d}",
            "title": title, "category": category.value, "urgency": urgency.value,
            "description": description, "voice_message": voice_message, "image": image,
            "location": geojson_point(longitude, latitude), "address": _clean_text(address),
            "upvotes": [], "upvote_count": 0,
            "status": status.value, "assignment_type": routing.assignment_type.value,
            "selection_method": jurisdiction.method.value,
            "reported_by": reporter.id,
            "municipality": jurisdiction.municipality["_id"],
            "department": routing.department["_id"] if routing.department else None,
            "assigned_to": None,
            "created_at": now, "updated_at": now,
            "resolved_at": None, "resolution_time_hours": None, "resolution_evidence": None,
            "rating": None, "feedback": None, "updates": [],
            "version": 0,
        }
        score_report(report, now)
        self.store.insert_report(report)
        if routing.department:
            self.store.attach_report_to_department(routing.department["_id"], report["_id"])
        logger.info("Report %s created in %s via %s (status=%s, priority=%d)",
                    report["report_id"], jurisdiction.municipality.get("name"),
                    jurisdiction.method.value, status.value, report["priority"])
        return CreatedReport(report, jurisdiction, routing)

    # -- transitions --------------------------------------------------------
    def change_status(self, report_id: str, actor: Principal, new_status,
                      message: Optional[str] = None, evidence: Optional[dict] = None) -> dict:
        target = parse_status(new_status)
        message = _clean_text(message)
        if evidence and target != ReportStatus.RESOLVED:
            raise BadRequest("Resolution evidence can only accompany a resolution")
        evidence = evidence or {}
        materials_cost = _non_negative(evidence.get("materials_cost"), "Materials cost")
        labor_hours = _non_negative(evidence.get("labor_hours"), "Labor hours")

        def change(report, now):
            self._check_can_operate(report, actor)
            current = ReportStatus(report["status"])
            if current in TERMINAL_STATUSES:
                raise InvalidTransition(f"Report is already {current.value}; no further changes allowed")
            if target == ReportStatus.ASSIGNED and current == ReportStatus.PENDING_ASSIGNMENT:
                raise InvalidTransition("Pending reports are assigned through manual department assignment")
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(f"Cannot move report from {current.value} to {target.value}")

            report["status"] = target.value
            if target == ReportStatus.RESOLVED:
                report["resolved_at"] = now
                report["resolution_time_hours"] = round(
                    (now - report["created_at"]).total_seconds() / 3600, 2)
                report["resolution_evidence"] = {
                    "image": evidence.get("image"),
                    "notes": _clean_text(evidence.get("notes")),
                    "completed_by": actor.id, "completion_date": now,
                    "materials_cost": materials_cost, "labor_hours": labor_hours,
                }
            if message:
                self._append_update(report, message, actor, now, target)
            # first status change by unassigned staff claims the report
            if actor.is_staff and not report.get("assigned_to"):
                report["assigned_to"] = actor.id

        report = self.writer.mutate(report_id, change)
        logger.info("Report %s moved to %s by %s", report_id, target.value, actor.id)
        return report

    def assign_report(self, report_id: str, actor: Principal, department_id: str,
                      staff_id: Optional[str] = None, message: Optional[str] = None) -> dict:
        if not actor.is_admin:
            raise Forbidden("Only administrators can assign reports")
        department = self.store.get_department(department_id)
        if department is None:
            raise NotFound("Department not found")
        if staff_id and staff_id not in (department.get("staff_members") or []):
            raise NotFound("Staff member not found in this department")
        message = _clean_text(message)
        previous = {}

        def change(report, now):
            current = ReportStatus(report["status"])
            if current not in (ReportStatus.PENDING_ASSIGNMENT, ReportStatus.ASSIGNED):
                raise InvalidTransition(f"Cannot assign a report that is {current.value}")
            if department["municipality"] != report["municipality"]:
                raise BadRequest("Department does not belong to the report's municipality")
            previous["department"] = report.get("department")
            if report.get("department") != department["_id"] or staff_id:
                report["assigned_to"] = staff_id
            report["department"] = department["_id"]
            report["status"] = ReportStatus.ASSIGNED.value
            report["assignment_type"] = AssignmentType.MANUAL.value
            if message:
                self._append_update(report, message, actor, now, ReportStatus.ASSIGNED)

        report = self.writer.mutate(report_id, change)
        if previous.get("department") and previous["department"] != department["_id"]:
            self.store.detach_report_from_department(previous["department"], report["_id"])
        self.store.attach_report_to_department(department["_id"], report["_id"])
        logger.info("Report %s manually assigned to %s by %s",
                    report_id, department.get("name"), actor.id)
        return report

    def change_urgency(self, report_id: str, actor: Principal, urgency) -> dict:
        if urgency is None or urgency == "":
            raise BadRequest("Urgency is required")
        urgency = parse_urgency(urgency)

        def change(report, now):
            self._check_can_operate(report, actor)
            if ReportStatus(report["status"]) in TERMINAL_STATUSES:
                raise InvalidTransition("Cannot change urgency of a closed report")
            report["urgency"] = urgency.value
            score_report(report, now)

        return self.writer.mutate(report_id, change)

    # -- engagement ---------------------------------------------------------
    def add_upvote(self, report_id: str, voter: Principal) -> dict:
        return self.ledger.add_vote(report_id, voter.id)

    def remove_upvote(self, report_id: str, voter: Principal) -> dict:
        return self.ledger.remove_vote(report_id, voter.id)

    def add_feedback(self, report_id: str, actor: Principal, rating: Optional[int] = None,
                     feedback: Optional[str] = None) -> dict:
        feedback = _clean_text(feedback)
        if rating is None and not feedback:
            raise BadRequest("Rating or feedback is required")

        def change(report, now):
            if report["reported_by"] != actor.id:
                raise Forbidden("Only the report creator can add feedback")
            if report["status"] != ReportStatus.RESOLVED.value:
                raise NotResolved("Feedback can only be added to resolved reports")
            if rating is not None:
                if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                    raise BadRating("Rating must be between 1 and 5")
                report["rating"] = rating
            if feedback:
                report["feedback"] = feedback

        return self.writer.mutate(report_id, change)

    def add_comment(self, report_id: str, actor: Principal, message: str) -> dict:
        message = _clean_text(message)
        if not message:
            raise BadRequest("Comment message is required")

        def change(report, now):
            self._check_can_view(report, actor)
            self._append_update(report, message, actor, now)

        return self.writer.mutate(report_id, change)

    # -- reads ----------------------------------------------------------------
    def get_report(self, report_id: str, actor: Principal) -> dict:
        report = self.writer.load(report_id)
        self._check_can_view(report, actor)
        return report

    def visibility_query(self, actor: Principal) -> dict:
        if actor.is_admin:
            return {}
        if actor.is_staff:
            if not actor.department:
                raise Forbidden("Staff account has no department")
            return {"department": actor.department}
        return {"$or": [{"reported_by": actor.id},
                        {"status": {"$in": [s.value for s in PUBLIC_STATUSES]}}]}

    def authorize_media(self, media_id: str, actor: Principal) -> dict:
        """Attachments are visible exactly to those who may view their report."""
        report = self.store.report_for_media(media_id)
        if report is None:
            raise NotFound("Media not found")
        self._check_can_view(report, actor)
        return report

    def list_reports(self, actor: Principal, status=None, category=None, urgency=None,
                     municipality: Optional[str] = None, department: Optional[str] = None,
                     priority: Optional[int] = None, search: Optional[str] = None,
                     has_voice_message: bool = False, has_image: bool = False,
                     mine: bool = False,
                     sort_by: str = "priority", sort_order: str = "desc",
                     page: int = 1, limit: int = 10) -> Tuple[List[dict], int]:
        if sort_by not in SORT_FIELDS:
            raise BadRequest(f"Cannot sort by '{sort_by}'")
        if sort_order not in ("asc", "desc"):
            raise BadRequest("Sort order must be 'asc' or 'desc'")
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise BadRequest(f"Page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        if priority is not None and (isinstance(priority, bool) or priority not in range(1, 6)):
            raise BadRequest("Priority filter must be between 1 and 5")
        search = _clean_text(search)
        if search and len(search) > MAX_SEARCH_LENGTH:
            raise BadRequest(f"Search text is limited to {MAX_SEARCH_LENGTH} characters")

        query = {}
        # own reports are always visible, whatever the role
        clauses = [{"reported_by": actor.id}] if mine else [self.visibility_query(actor)]
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            clauses.append({"$or": [{field: pattern} for field in SEARCH_FIELDS]})
        clauses = [c for c in clauses if c]
        if clauses:
            query["$and"] = clauses
        if status:
            query["status"] = parse_status(status).value
        if category:
            query["category"] = parse_category(category).value
        if urgency:
            query["urgency"] = parse_urgency(urgency).value
        if priority is not None:
            query["priority"] = priority
        if municipality:
            query["municipality"] = municipality
        if department and not actor.is_staff:
            query["department"] = department
        if has_voice_message:
            query["voice_message"] = {"$ne": None}
        if has_image:
            query["image"] = {"$ne": None}

        direction = -1 if sort_order == "desc" else 1
        sort = [(sort_by, direction)]
        if sort_by != "created_at":
            sort.append(("created_at", -1))
        reports = self.store.find_reports(query, sort, (page - 1) * limit, limit)
        return reports, self.store.count_reports(query)

    def analytics_query(self, actor: Principal) -> dict:
        if actor.is_admin:
            return {}
        if actor.is_staff and actor.department:
            return {"department": actor.department}
        raise Forbidden("Insufficient permissions")

    # -- deletion -----------------------------------------------------------
    def delete_report(self, report_id: str, actor: Principal) -> dict:
        if not actor.is_admin:
            raise Forbidden("Only administrators can delete reports")
        report = self.writer.load(report_id)
        if not self.store.delete_report(report_id):
            raise NotFound("Report not found")
        if report.get("department"):
            self.store.detach_report_from_department(report["department"], report["_id"])
        if self.media is not None:
            for media_id in media_ids(report):
                self.media.delete(media_id)
        logger.info("Report %s deleted by %s", report_id, actor.id)
        return report
