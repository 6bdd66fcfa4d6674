"""Request-workflow use cases (leave and swap requests)."""

from .common import RequestStatus
from .leaves import LEAVE_TYPES, LeaveWorkflow
from .swaps import ASSIGNMENT_KINDS, SwapReviewPolicy, SwapWorkflow

__all__ = [
    "ASSIGNMENT_KINDS",
    "LEAVE_TYPES",
    "LeaveWorkflow",
    "RequestStatus",
    "SwapReviewPolicy",
    "SwapWorkflow",
]
