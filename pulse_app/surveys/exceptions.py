"""Typed outcomes of the survey engine.

Every error here is an expected result handed back to the immediate caller, never
a crash. ``status_code`` is the HTTP status the API layer answers with; ``code`` is
a stable machine-readable identifier.
"""


class PulseError(Exception):
    """Base class for all engine outcomes."""

    code = "error"
    status_code = 400
    default_message = "The request could not be processed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ForbiddenTransition(PulseError):
    code = "forbidden_transition"
    status_code = 403
    default_message = "You are not allowed to make this status change."


class StaleState(PulseError):
    code = "stale_state"
    status_code = 409
    default_message = (
        "The survey status changed while your request was processed. "
        "Reload the survey and try again."
    )


class NotFound(PulseError):
    code = "not_found"
    status_code = 404
    default_message = "No invitation matches this code."


class AlreadyUsed(PulseError):
    code = "already_used"
    status_code = 409
    default_message = "This invitation was already used."


class Expired(PulseError):
    code = "expired"
    status_code = 410
    default_message = "This invitation has expired. Ask for it to be resent."


class DuplicateActiveInvitation(PulseError):
    code = "duplicate_active_invitation"
    status_code = 409
    default_message = "An open invitation already exists for this email address."


class SurveyNotOpen(PulseError):
    code = "survey_not_open"
    status_code = 409
    default_message = "This survey is not open for responses."


class AlreadyResponded(PulseError):
    code = "already_responded"
    status_code = 409
    default_message = "You have already responded to this survey."


class NotEligible(PulseError):
    code = "not_eligible"
    status_code = 403
    default_message = "You are not eligible to respond to this survey."


class ValidationError(PulseError):
    code = "validation_error"
    status_code = 400
    default_message = "The submitted data is invalid."


class PermissionDenied(PulseError):
    code = "permission_denied"
    status_code = 403
    default_message = "You do not have permission to perform this action."
