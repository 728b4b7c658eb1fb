"""Static triage engine for suspicious files."""

from .models import Artifact, Report, TaskEvent, TaskKind, TaskStatus
from .sessions import MemberScanError, SessionError, SessionManager

__version__ = "0.1.0"

__all__ = [
    "Artifact",
    "MemberScanError",
    "Report",
    "SessionError",
    "SessionManager",
    "TaskEvent",
    "TaskKind",
    "TaskStatus",
    "__version__",
]
