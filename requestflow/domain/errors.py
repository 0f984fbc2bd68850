"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    user_message: str = "تعذر إتمام العملية"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        if user_message:
            self.user_message = user_message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "user_message": self.user_message,
                "details": self.details
            }
        }


# Definition Errors
class DefinitionError(DomainError):
    """No workflow definition found for a service"""
    error_code = "DEFINITION_NOT_FOUND"
    user_message = "لا يوجد مسار عمل معرف لهذه الخدمة"


class WorkflowValidationError(DefinitionError):
    """Workflow definition is structurally invalid"""
    error_code = "WORKFLOW_VALIDATION_ERROR"
    user_message = "تعريف مسار العمل غير صالح"


# Not Found Errors
class RequestNotFoundError(DomainError):
    """Request not found"""
    error_code = "REQUEST_NOT_FOUND"
    user_message = "الطلب غير موجود"


# Conflict Errors
class ConcurrencyError(DomainError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"
    user_message = "تم تعديل الطلب من قبل مستخدم آخر، يرجى المحاولة مرة أخرى"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"


class InvalidStepError(EngineError):
    """Current step key not present in the definition"""
    error_code = "INVALID_STEP"
    user_message = "الخطوة الحالية غير موجودة في مسار العمل"


class StepNotActiveError(EngineError):
    """Action submitted on a step that is not currently active"""
    error_code = "STEP_NOT_ACTIVE"
    user_message = "تمت معالجة هذه الخطوة مسبقاً"


class NoTransitionError(EngineError):
    """Approve found no eligible edge on a non-end node"""
    error_code = "NO_TRANSITION"
    user_message = "لا يوجد انتقال صالح من الخطوة الحالية"


class AssigneeResolutionError(EngineError):
    """Could not resolve an owner for a step"""
    error_code = "ASSIGNEE_NOT_RESOLVED"
    user_message = "تعذر تحديد المسؤول عن الخطوة التالية"


class ManagerNotFoundError(AssigneeResolutionError):
    """Manager chain ended before the requested depth"""
    error_code = "MANAGER_NOT_FOUND"


class HierarchyCycleError(AssigneeResolutionError):
    """Manager relation loops back on itself"""
    error_code = "HIERARCHY_CYCLE"


class SubworkflowDepthError(EngineError):
    """Nested subworkflow references exceed the depth bound or form a cycle"""
    error_code = "SUBWORKFLOW_DEPTH_EXCEEDED"
    user_message = "تجاوز مسار العمل الفرعي الحد المسموح به من التداخل"
