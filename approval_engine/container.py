"""Container - Explicit wiring of repositories, engine and services

Everything is built from one ``Settings`` and one ``Database``; no
collaborator reaches for a module global. Tests build a container over a
mongomock database with a fake job queue and lifecycle manager.
"""
from typing import Optional
from pymongo.database import Database

from .clients.lifecycle_client import HttpLifecycleManager, LifecycleManager
from .config.settings import Settings
from .engine.action_executor import ActionExecutor
from .engine.approver_resolver import ApproverResolver
from .engine.condition_evaluator import ConditionEvaluator
from .engine.event_bus import EventBus
from .engine.instance_engine import ApprovalEngine
from .engine.sla_timers import SlaTimerService
from .repositories.cache_repo import CacheRepository
from .repositories.directory_repo import DirectoryRepository
from .repositories.event_repo import EventRepository
from .repositories.instance_repo import InstanceRepository
from .repositories.lifecycle_repo import LifecycleRepository
from .repositories.mongo_client import get_database
from .repositories.template_repo import TemplateRepository
from .scheduler.job_queue import JobQueue
from .services.approval_gate_service import ApprovalGateService
from .services.approval_service import ApprovalService
from .services.template_service import TemplateService
from .utils.jwt import JWTValidator


class Container:
    """Holds one fully wired instance of every collaborator"""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        job_queue: Optional[JobQueue] = None,
        lifecycle_manager: Optional[LifecycleManager] = None
    ):
        self.settings = settings
        self.db = db

        # Repositories
        self.template_repo = TemplateRepository(db)
        self.instance_repo = InstanceRepository(db)
        self.event_repo = EventRepository(db)
        self.directory_repo = DirectoryRepository(db)
        self.cache_repo = CacheRepository(db)
        self.lifecycle_repo = LifecycleRepository(db)

        # Engine
        self.job_queue = job_queue or JobQueue()
        self.lifecycle_manager = lifecycle_manager or HttpLifecycleManager(
            settings.lifecycle_base_url, settings.lifecycle_timeout_seconds
        )
        self.evaluator = ConditionEvaluator()
        self.resolver = ApproverResolver(self.directory_repo, self.cache_repo, self.evaluator, settings)
        self.event_bus = EventBus(self.event_repo)
        self.sla_timers = SlaTimerService(
            self.instance_repo, self.event_repo, self.event_bus, self.job_queue, settings
        )
        self.engine = ApprovalEngine(
            template_repo=self.template_repo,
            instance_repo=self.instance_repo,
            event_repo=self.event_repo,
            directory_repo=self.directory_repo,
            resolver=self.resolver,
            event_bus=self.event_bus,
            sla_timers=self.sla_timers,
            settings=settings,
            lifecycle_manager=self.lifecycle_manager
        )
        self.executor = ActionExecutor(self.engine, settings)

        # Services
        self.template_service = TemplateService(
            self.template_repo, self.lifecycle_repo, self.resolver, settings
        )
        self.approval_service = ApprovalService(self.engine, self.executor)
        self.gate_service = ApprovalGateService(self.engine, self.instance_repo, self.lifecycle_repo)
        self.jwt_validator = JWTValidator(settings)

        self.sla_timers.register_handlers()

    @classmethod
    def build(cls, settings: Settings, db: Optional[Database] = None) -> "Container":
        """Container over the configured MongoDB database"""
        return cls(settings, db if db is not None else get_database())
