"""
=============================================================================
ERRORS.PY — Domain errors
=============================================================================
Services raise these; main.py turns them into HTTP responses:

  ValidationError        → 400  bad input, date not valid for the habit...
  AlreadyCheckedInError  → 409  the date is already in completed_dates
  AuthorizationError     → 403  the resource belongs to someone else
  NotFoundError          → 404
  AIUnavailableError     → 503  AI generator unconfigured or failing

None of them is raised after a state change: callers can rely on
"exception = nothing was written".
"""


class GrowTrackError(Exception):
    """Base class for every error the services raise on purpose"""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GrowTrackError):
    status_code = 400


class AlreadyCheckedInError(ValidationError):
    status_code = 409

    def __init__(self, date_str: str):
        super().__init__(f"Already checked in for {date_str}")
        self.date = date_str


class AuthorizationError(GrowTrackError):
    status_code = 403


class NotFoundError(GrowTrackError):
    status_code = 404


class AIUnavailableError(GrowTrackError):
    status_code = 503
