"""Service modules - Request lifecycle layer"""
from .request_service import RequestService, TransitionPlan

__all__ = [
    "RequestService",
    "TransitionPlan",
]
