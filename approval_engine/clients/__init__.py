"""Client modules - Calls into downstream services"""
from .lifecycle_client import LifecycleManager, HttpLifecycleManager

__all__ = ["LifecycleManager", "HttpLifecycleManager"]
