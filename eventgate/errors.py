"""
Domain errors for ticket issuance, scan resolution and attendance.

These are business failures, not HTTP responses. Each carries the
status code and reason code the API layer reports, and the handler in
main.py turns them into `{error, details, debug, reasonCode}` bodies.
"""

from typing import Optional


class EventGateError(Exception):
    status_code = 400
    reason_code = "ERROR"
    default_message = "Request failed"
    # set when the failing request had already resolved to a stored ticket
    ticket = None

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None, debug: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details
        self.debug = debug
        super().__init__(self.message)

    def to_response(self) -> dict:
        body = {"error": self.message, "reasonCode": self.reason_code}
        if self.details:
            body["details"] = self.details
        if self.debug:
            body["debug"] = self.debug
        return body


class ConfigError(RuntimeError):
    """Raised at startup when required configuration is missing."""


# --- payload authentication ---
class AuthError(EventGateError):
    reason_code = "INVALID_TOKEN"


class Malformed(AuthError):
    reason_code = "MALFORMED"
    default_message = "Invalid QR code format"


class Tampered(AuthError):
    reason_code = "TAMPERED"
    default_message = "QR code has been tampered with"


class Expired(AuthError):
    reason_code = "EXPIRED"
    default_message = "QR code has expired"


# --- resolution / lookup ---
class UnrecognizedFormat(EventGateError):
    reason_code = "UNRECOGNIZED_FORMAT"
    default_message = "Invalid QR code format"


class NotFoundError(EventGateError):
    status_code = 404
    reason_code = "NOT_FOUND"
    default_message = "Not found"


class TicketNotFound(NotFoundError):
    reason_code = "TICKET_NOT_FOUND"
    default_message = "Invalid ticket"


class RegistrationNotFound(NotFoundError):
    reason_code = "REGISTRATION_NOT_FOUND"
    default_message = "Registration not found"


class EventNotFound(NotFoundError):
    reason_code = "EVENT_NOT_FOUND"
    default_message = "Event not found"


class AttendanceNotFound(NotFoundError):
    reason_code = "ATTENDANCE_NOT_FOUND"
    default_message = "Attendance record not found"


# --- state conflicts ---
class StateConflict(EventGateError):
    reason_code = "STATE_CONFLICT"


class AlreadyCheckedIn(StateConflict):
    reason_code = "ALREADY_CHECKED_IN"
    default_message = "Already checked in"


class NoOpenCheckIn(StateConflict):
    reason_code = "NO_OPEN_CHECK_IN"
    default_message = "No active check-in found"


class RegistrationNotConfirmed(StateConflict):
    reason_code = "REGISTRATION_NOT_CONFIRMED"
    default_message = "Registration not confirmed"


class EventNotScannable(StateConflict):
    reason_code = "EVENT_NOT_SCANNABLE"
    default_message = "Event not available for check-in"


class EventNotStarted(StateConflict):
    reason_code = "EVENT_NOT_STARTED"
    default_message = "Event not started"


class EventEnded(StateConflict):
    reason_code = "EVENT_ENDED"
    default_message = "Event ended"


class TicketMismatch(StateConflict):
    reason_code = "TICKET_MISMATCH"
    default_message = "QR code does not match ticket data"


class TicketAlreadyUsed(StateConflict):
    reason_code = "TICKET_ALREADY_USED"
    default_message = "Ticket has already been used"


class InvalidAction(StateConflict):
    reason_code = "INVALID_ACTION"
    default_message = "Invalid action"


# --- issuance ---
class DuplicateTicketNumber(EventGateError):
    status_code = 409
    reason_code = "DUPLICATE_TICKET_NUMBER"
    default_message = "Could not allocate a unique ticket number"


class TicketAlreadyIssued(EventGateError):
    status_code = 409
    reason_code = "TICKET_ALREADY_ISSUED"
    default_message = "Registration already has a ticket"


class RenderFailure(EventGateError):
    status_code = 500
    reason_code = "RENDER_FAILURE"
    default_message = "Failed to generate QR code"


# --- callers ---
class Unauthorized(EventGateError):
    status_code = 401
    reason_code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class Forbidden(EventGateError):
    status_code = 403
    reason_code = "FORBIDDEN"
    default_message = "Insufficient permissions"


class Unauthenticated(Forbidden):
    reason_code = "UNAUTHENTICATED_SCAN"
    default_message = "Only signed ticket payloads may be used for this action"


class RateLimited(EventGateError):
    status_code = 429
    reason_code = "RATE_LIMITED"
    default_message = "Too many scan requests"
