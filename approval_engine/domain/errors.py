"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""
    
    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400
    
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authentication & Authorization Errors
class AuthenticationError(DomainError):
    """Token missing, invalid, or expired"""
    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class AuthorizationError(DomainError):
    """User lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class ActionNotAllowedError(AuthorizationError):
    """Workflow state or assignment does not permit the action"""
    error_code = "ACTION_NOT_ALLOWED"


class NotRequesterError(AuthorizationError):
    """Only the requester may perform the action"""
    error_code = "NOT_REQUESTER"


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class TemplateValidationError(ValidationError):
    """Approval template failed structural validation"""
    error_code = "TEMPLATE_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class TemplateNotFoundError(NotFoundError):
    """Approval template not found"""
    error_code = "TEMPLATE_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Approval instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


class TaskNotFoundError(NotFoundError):
    """Approval task not found"""
    error_code = "TASK_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    """Instance stage not found"""
    error_code = "STEP_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class LockUnavailableError(ConflictError):
    """Per-instance lock could not be acquired in time"""
    error_code = "LOCK_UNAVAILABLE"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class TaskNotPendingError(InvalidStateError):
    """Decision submitted on a task that is already decided"""
    error_code = "TASK_NOT_PENDING"


class InstanceTerminalError(InvalidStateError):
    """Instance has already reached a terminal status"""
    error_code = "INSTANCE_TERMINAL"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


# Engine Errors
class EngineError(DomainError):
    """Approval engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class ApproverResolutionError(EngineError):
    """Could not resolve approvers for a stage"""
    error_code = "NO_APPROVERS"
    http_status = 400


class UnknownActionError(EngineError):
    """Action is not part of the vocabulary"""
    error_code = "UNKNOWN_ACTION"
    http_status = 400


# External Service Errors
class ExternalServiceError(DomainError):
    """External service failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class LifecycleError(ExternalServiceError):
    """Downstream lifecycle manager rejected or failed a transition"""
    error_code = "LIFECYCLE_ERROR"
