# Civic Issue Reporting API
# FastAPI + MongoDB (GridFS attachments) + OpenCage reverse geocoding

import re
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor

import uvicorn
from fastapi import FastAPI, HTTPException, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from jose import JWTError, jwt
from pydantic import ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from . import config
from .errors import BadRequest, TriageError
from .jurisdiction import AssignmentRouter, JurisdictionResolver, ReverseGeocoder
from .lifecycle import ReportLifecycle
from .media import MediaStore
from .models import (
    AnalyticsResponse, AssignmentRequest, CommentRequest, CreateReportResponse, FeedbackRequest,
    Pagination, Principal, ReportListResponse, ReportResponse, ReportUpdate, UpvoteResponse,
    UrgencyChange,
)
from .store import MongoStore

logger = logging.getLogger(__name__)

REPORT_ID_PATTERN = re.compile(r"^[A-Z]{4}-\d{3,9}$")

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="Civic Issue Reporting: Triage & Assignment API")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


async def triage_error_handler(request: Request, exc: TriageError):
    return JSONResponse(status_code=exc.status_code,
                        content={"detail": exc.message, "code": exc.code})

app.add_exception_handler(TriageError, triage_error_handler)

# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response

app.add_middleware(SecurityHeadersMiddleware)
store: Optional[MongoStore] = None
media: Optional[MediaStore] = None
lifecycle: Optional[ReportLifecycle] = None
executor = ThreadPoolExecutor(max_workers=10)
bearer_scheme = HTTPBearer(auto_error=False)

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_db()
    yield
    if store:
        store.close()

app.router.lifespan_context = lifespan

async def startup_db():
    global store, media, lifecycle
    store = MongoStore.connect()
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, store.create_indexes)
    media = MediaStore(store.db)
    geocoder = ReverseGeocoder(api_key=config.OPENCAGE_API_KEY)
    if not config.OPENCAGE_API_KEY:
        logger.warning("OPENCAGE_API_KEY not set; district fallback for jurisdiction is disabled")
    lifecycle = ReportLifecycle(store, JurisdictionResolver(store, geocoder),
                                AssignmentRouter(store), media)
    logger.info("Database initialized (%s)", config.MONGODB_DB)

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_lifecycle():
    return lifecycle

async def get_media():
    return media

async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Principal:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        return Principal(id=str(payload["sub"]), role=payload.get("role"),
                         department=payload.get("department"))
    except ValidationError:
        raise HTTPException(status_code=401, detail="Invalid token claims")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
async def in_executor(fn, *args):
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(executor, fn, *args)

def validate_report_id(value: str) -> str:
    if not isinstance(value, str) or not REPORT_ID_PATTERN.match(value):
        raise BadRequest("Invalid report id format")
    return value

def report_to_response(report: dict, viewer: Optional[Principal] = None) -> ReportResponse:
    has_upvoted = bool(viewer) and any(v["user_id"] == viewer.id for v in report.get("upvotes", []))
    return ReportResponse(**report, id=report["_id"], has_upvoted=has_upvoted)

async def store_upload(media_store: MediaStore, upload: Optional[UploadFile], kind: str,
                       uploaded: List[str]) -> Optional[dict]:
    if upload is None or not upload.filename:
        return None
    data = await upload.read()
    ref = await in_executor(media_store.store, data, upload.filename, upload.content_type, kind)
    uploaded.append(ref["id"])
    return ref

async def release_uploads(media_store: MediaStore, uploaded: List[str]):
    for media_id in uploaded:
        await in_executor(media_store.delete, media_id)
        logger.info("Released attachment %s after failed request", media_id)

# ---------------------------------------------------------------------------
# REPORT ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/reports", response_model=CreateReportResponse, status_code=201)
@limiter.limit(config.REPORT_RATE_LIMIT)
async def create_report(request: Request,
                        title: str = Form(""), category: str = Form(""),
                        urgency: Optional[str] = Form(None), description: Optional[str] = Form(None),
                        longitude: Optional[str] = Form(None), latitude: Optional[str] = Form(None),
                        address: Optional[str] = Form(None),
                        voice_message: Optional[UploadFile] = File(None),
                        image: Optional[UploadFile] = File(None),
                        user: Principal = Depends(get_current_user),
                        lifecycle: ReportLifecycle = Depends(get_lifecycle),
                        media: MediaStore = Depends(get_media)):
    uploaded: List[str] = []
    try:
        voice_ref = await store_upload(media, voice_message, "voice", uploaded)
        image_ref = await store_upload(media, image, "image", uploaded)
        created = await in_executor(lambda: lifecycle.create_report(
            user, title, category, (longitude, latitude), urgency=urgency,
            description=description, voice_message=voice_ref, image=image_ref, address=address))
    except TriageError:
        await release_uploads(media, uploaded)
        raise
    except Exception as e:
        await release_uploads(media, uploaded)
        logger.error("Error creating report: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")
    department = created.routing.department
    return CreateReportResponse(
        report=report_to_response(created.report, user),
        auto_selected={"municipality": created.jurisdiction.municipality.get("name", ""),
                       "selection_method": created.jurisdiction.method,
                       "department": department.get("name") if department else None})

def report_page(reports: List[dict], total: int, page: int, limit: int, viewer: Principal) -> ReportListResponse:
    total_pages = -(-total // limit)
    return ReportListResponse(
        reports=[report_to_response(r, viewer) for r in reports],
        pagination=Pagination(total_pages=total_pages, current_page=page, total_reports=total,
                              has_next_page=page < total_pages, has_prev_page=page > 1, limit=limit))

@app.get("/reports", response_model=ReportListResponse)
async def list_reports(status: Optional[str] = None, category: Optional[str] = None,
                       urgency: Optional[str] = None, municipality: Optional[str] = None,
                       department: Optional[str] = None,
                       priority: Optional[int] = Query(None, ge=1, le=5),
                       search: Optional[str] = Query(None, max_length=100),
                       has_voice_message: bool = False, has_image: bool = False,
                       mine: bool = False,
                       sort_by: str = "priority", sort_order: str = "desc",
                       page: int = Query(1, ge=1, le=10000), limit: int = Query(10, ge=1, le=100),
                       user: Principal = Depends(get_current_user),
                       lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    reports, total = await in_executor(lambda: lifecycle.list_reports(
        user, status=status, category=category, urgency=urgency, municipality=municipality,
        department=department, priority=priority, search=search,
        has_voice_message=has_voice_message, has_image=has_image, mine=mine,
        sort_by=sort_by, sort_order=sort_order, page=page, limit=limit))
    return report_page(reports, total, page, limit, user)

@app.get("/reports/mine", response_model=ReportListResponse)
async def list_my_reports(status: Optional[str] = None,
                          page: int = Query(1, ge=1, le=10000), limit: int = Query(10, ge=1, le=100),
                          user: Principal = Depends(get_current_user),
                          lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    reports, total = await in_executor(lambda: lifecycle.list_reports(
        user, status=status, mine=True, sort_by="created_at", sort_order="desc",
        page=page, limit=limit))
    return report_page(reports, total, page, limit, user)

@app.get("/reports/analytics", response_model=AnalyticsResponse)
async def get_analytics(user: Principal = Depends(get_current_user),
                        lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    query = lifecycle.analytics_query(user)
    # independent reads, issued concurrently
    overview, categories = await asyncio.gather(
        in_executor(lifecycle.store.report_overview, dict(query)),
        in_executor(lifecycle.store.category_stats, dict(query)))
    avg_rating = overview.get("avg_rating")
    return AnalyticsResponse(
        total_reports=overview["total_reports"],
        status_distribution=overview["status_distribution"],
        avg_rating=round(avg_rating, 2) if avg_rating is not None else None,
        total_upvotes=overview["total_upvotes"],
        avg_priority=round(overview["avg_priority"], 2),
        category_stats=categories,
        generated_at=datetime.now(timezone.utc))

@app.get("/reports/{report_id}", response_model=ReportResponse)
async def get_report(report_id: str, user: Principal = Depends(get_current_user),
                     lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lifecycle.get_report, report_id, user)
    return report_to_response(report, user)

@app.put("/reports/{report_id}/status", response_model=ReportResponse)
async def update_status(report_id: str, status: str = Form(""), message: Optional[str] = Form(None),
                        resolution_notes: Optional[str] = Form(None),
                        materials_cost: Optional[str] = Form(None),
                        labor_hours: Optional[str] = Form(None),
                        resolution_image: Optional[UploadFile] = File(None),
                        user: Principal = Depends(get_current_user),
                        lifecycle: ReportLifecycle = Depends(get_lifecycle),
                        media: MediaStore = Depends(get_media)):
    report_id = validate_report_id(report_id)
    uploaded: List[str] = []
    try:
        image_ref = await store_upload(media, resolution_image, "resolution", uploaded)
        evidence = None
        if image_ref or resolution_notes or materials_cost or labor_hours:
            evidence = {"image": image_ref, "notes": resolution_notes,
                        "materials_cost": materials_cost, "labor_hours": labor_hours}
        report = await in_executor(lambda: lifecycle.change_status(
            report_id, user, status, message=message, evidence=evidence))
    except TriageError:
        await release_uploads(media, uploaded)
        raise
    return report_to_response(report, user)

@app.put("/reports/{report_id}/assign", response_model=ReportResponse)
async def assign_report(report_id: str, assignment: AssignmentRequest,
                        user: Principal = Depends(get_current_user),
                        lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lambda: lifecycle.assign_report(
        report_id, user, assignment.department_id, staff_id=assignment.staff_id,
        message=assignment.message))
    return report_to_response(report, user)

@app.put("/reports/{report_id}/urgency", response_model=ReportResponse)
async def change_urgency(report_id: str, change: UrgencyChange,
                         user: Principal = Depends(get_current_user),
                         lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lifecycle.change_urgency, report_id, user, change.urgency)
    return report_to_response(report, user)

@app.post("/reports/{report_id}/upvote", response_model=UpvoteResponse)
@limiter.limit("30/minute")
async def upvote_report(request: Request, report_id: str, user: Principal = Depends(get_current_user),
                        lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lifecycle.add_upvote, report_id, user)
    return UpvoteResponse(upvote_count=report["upvote_count"], priority=report["priority"],
                          has_upvoted=True)

@app.delete("/reports/{report_id}/upvote", response_model=UpvoteResponse)
async def remove_upvote(report_id: str, user: Principal = Depends(get_current_user),
                        lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lifecycle.remove_upvote, report_id, user)
    return UpvoteResponse(upvote_count=report["upvote_count"], priority=report["priority"],
                          has_upvoted=False)

@app.post("/reports/{report_id}/feedback", response_model=ReportResponse)
async def add_feedback(report_id: str, feedback: FeedbackRequest,
                       user: Principal = Depends(get_current_user),
                       lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lambda: lifecycle.add_feedback(
        report_id, user, rating=feedback.rating, feedback=feedback.feedback))
    return report_to_response(report, user)

@app.get("/reports/{report_id}/comments", response_model=List[ReportUpdate])
async def get_comments(report_id: str, user: Principal = Depends(get_current_user),
                       lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lifecycle.get_report, report_id, user)
    return report["updates"]

@app.post("/reports/{report_id}/comments", response_model=List[ReportUpdate])
async def add_comment(report_id: str, comment: CommentRequest,
                      user: Principal = Depends(get_current_user),
                      lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    report = await in_executor(lifecycle.add_comment, report_id, user, comment.message)
    return report["updates"]

@app.delete("/reports/{report_id}")
async def delete_report(report_id: str, user: Principal = Depends(get_current_user),
                        lifecycle: ReportLifecycle = Depends(get_lifecycle)):
    report_id = validate_report_id(report_id)
    await in_executor(lifecycle.delete_report, report_id, user)
    return {"status": "ok", "report_id": report_id}

# ---------------------------------------------------------------------------
# MEDIA
# ---------------------------------------------------------------------------
@app.get("/media/{media_id}")
async def get_media_file(media_id: str, user: Principal = Depends(get_current_user),
                         lifecycle: ReportLifecycle = Depends(get_lifecycle),
                         media: MediaStore = Depends(get_media)):
    await in_executor(lifecycle.authorize_media, media_id, user)

    def fetch():
        grid_out = media.open(media_id)
        return grid_out.read(), grid_out.content_type
    data, content_type = await in_executor(fetch)
    return Response(content=data, media_type=content_type or "application/octet-stream")

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "Civic Report Triage",
            "timestamp": datetime.now(timezone.utc)}

def main():
    uvicorn.run(app, host="0.0.0.0", port=8000)

if __name__ == "__main__":
    main()
