"""Service modules - Business logic layer"""
from .template_service import TemplateService
from .approval_service import ApprovalService
from .approval_gate_service import ApprovalGateService

__all__ = [
    "TemplateService",
    "ApprovalService",
    "ApprovalGateService",
]
