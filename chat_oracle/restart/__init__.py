"""
Browser restart coordination shared by every run on one profile.

- approval: approval/done records and the wait protocol
- locks: performer and notify role locks
- notify: asking a human through desktop notifications
"""

from .approval import ApprovalResult, RestartCoordinator, approve_restart
from .locks import ExclusiveFileLock, InMemoryLock, Lock
from .notify import notify_restart

__all__ = [
    "ApprovalResult",
    "ExclusiveFileLock",
    "InMemoryLock",
    "Lock",
    "RestartCoordinator",
    "approve_restart",
    "notify_restart",
]
