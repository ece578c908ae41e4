# Failure taxonomy for the triage engine. The HTTP layer renders these as
# {"detail": ..., "code": ...} with the attached status code.


class TriageError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequest(TriageError):
    status_code = 400
    code = "bad_request"


class BadRating(BadRequest):
    code = "bad_rating"


class InvalidStatus(BadRequest):
    code = "invalid_status"


class NotResolved(BadRequest):
    code = "not_resolved"


class Forbidden(TriageError):
    status_code = 403
    code = "forbidden"


class NotFound(TriageError):
    status_code = 404
    code = "not_found"


class Conflict(TriageError):
    status_code = 409
    code = "conflict"


class AlreadyVoted(Conflict):
    code = "already_voted"


class ReportResolved(Conflict):
    code = "report_resolved"


class InvalidTransition(Conflict):
    code = "invalid_transition"


class NoJurisdictionFound(TriageError):
    status_code = 422
    code = "no_jurisdiction"


class UpstreamDegraded(TriageError):
    """Raised inside the geocoder only; the resolver absorbs it."""
    status_code = 503
    code = "upstream_degraded"
