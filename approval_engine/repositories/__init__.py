"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, create_indexes, health_check
from .template_repo import TemplateRepository
from .instance_repo import InstanceRepository
from .event_repo import EventRepository
from .directory_repo import DirectoryRepository
from .cache_repo import CacheRepository
from .lifecycle_repo import LifecycleRepository

__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "health_check",
    "TemplateRepository",
    "InstanceRepository",
    "EventRepository",
    "DirectoryRepository",
    "CacheRepository",
    "LifecycleRepository",
]
