"""Call signalling core: state machine, dispatcher, controller and ports."""

from .clock import Clock, LoopClock, ManualClock, TimerRegistry  # noqa: F401
from .controller import CallController  # noqa: F401
from .dispatcher import DiscardReason, SignalDispatcher  # noqa: F401
from .errors import (  # noqa: F401
    CallDeclined,
    CallError,
    CallInProgress,
    CapacityExceeded,
    InvalidRequest,
    NoAnswer,
    NoIncomingCall,
    NotAMember,
    PermissionDenied,
    RemoteBusy,
    ServiceUnavailable,
    TransportFailure,
    Unauthorized,
)
from .machine import CallPolicy, MachineState, transition  # noqa: F401
from .ringtone import RingtoneController, RingtoneProfile  # noqa: F401
from .types import (  # noqa: F401
    ActiveCall,
    CallCapabilities,
    CallLog,
    CallSignal,
    CallState,
    CallStatus,
    CallType,
    IncomingCall,
    MediaToken,
    Participant,
    Profile,
    SignalType,
    UserRole,
    participant_uid,
)

__all__ = [
    "ActiveCall",
    "CallCapabilities",
    "CallController",
    "CallDeclined",
    "CallError",
    "CallInProgress",
    "CallLog",
    "CallPolicy",
    "CallSignal",
    "CallState",
    "CallStatus",
    "CallType",
    "CapacityExceeded",
    "Clock",
    "DiscardReason",
    "IncomingCall",
    "InvalidRequest",
    "LoopClock",
    "MachineState",
    "ManualClock",
    "MediaToken",
    "NoAnswer",
    "NoIncomingCall",
    "NotAMember",
    "Participant",
    "PermissionDenied",
    "Profile",
    "RemoteBusy",
    "RingtoneController",
    "RingtoneProfile",
    "ServiceUnavailable",
    "SignalDispatcher",
    "SignalType",
    "TimerRegistry",
    "TransportFailure",
    "Unauthorized",
    "UserRole",
    "participant_uid",
    "transition",
]
