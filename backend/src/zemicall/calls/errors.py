"""Error taxonomy surfaced by call operations."""

from __future__ import annotations


class CallError(Exception):
    """Base class for errors surfaced to the call UI.

    ``code`` is the message key the UI renders.
    """

    code = "call.error"
    status_code: int | None = None
    default_message = "Call failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CallError):
            return NotImplemented
        return type(self) is type(other) and self.message == other.message

    def __hash__(self) -> int:
        return hash((type(self), self.message))


class Unauthorized(CallError):
    code = "call.unauthorized"
    status_code = 401
    default_message = "Could not validate credentials"


class NotAMember(CallError):
    code = "call.notAMember"
    status_code = 403
    default_message = "Not a member of this chat"


class PermissionDenied(CallError):
    code = "call.permissionDenied"
    status_code = 403
    default_message = "Call permission denied"


class InvalidRequest(CallError):
    code = "call.invalidRequest"
    status_code = 400
    default_message = "Invalid call request"


class CapacityExceeded(CallError):
    code = "call.capacityExceeded"
    status_code = 409
    default_message = "Call is full"


class ServiceUnavailable(CallError):
    code = "call.serviceUnavailable"
    status_code = 503
    default_message = "Call service unavailable"


class TransportFailure(CallError):
    code = "call.error"
    default_message = "Media connection failed"


class CallInProgress(CallError):
    code = "call.inProgress"
    default_message = "Another call is already in progress"


class NoIncomingCall(CallError):
    code = "call.noIncomingCall"
    default_message = "There is no incoming call to answer"


class NoAnswer(CallError):
    code = "call.noAnswer"
    default_message = "No answer"


class CallDeclined(CallError):
    code = "call.declined"
    default_message = "Call declined"


class RemoteBusy(CallError):
    code = "call.busy"
    default_message = "User is busy"


def error_for_status(status_code: int, detail: str | None = None) -> CallError:
    """Translate an HTTP status from the call service into a ``CallError``."""

    message = detail or None
    if status_code == 401:
        return Unauthorized(message)
    if status_code == 403:
        if message and "member" in message.lower():
            return NotAMember(message)
        return PermissionDenied(message)
    if status_code in (400, 404, 422):
        return InvalidRequest(message)
    if status_code == 409:
        return CapacityExceeded(message)
    if status_code >= 500:
        return ServiceUnavailable(message)
    return CallError(message)


__all__ = [
    "CallError",
    "Unauthorized",
    "NotAMember",
    "PermissionDenied",
    "InvalidRequest",
    "CapacityExceeded",
    "ServiceUnavailable",
    "TransportFailure",
    "CallInProgress",
    "NoIncomingCall",
    "NoAnswer",
    "CallDeclined",
    "RemoteBusy",
    "error_for_status",
]
