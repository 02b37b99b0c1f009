"""Instance Repository - Data access for approval instances, stages, tasks and snapshots

Instances carry an optimistic ``version`` counter bumped on every mutation and
an advisory lock (``locked_by`` / ``lock_expires_ms``) acquired atomically with
find-and-modify, so only one writer at a time drives an instance forward.
"""
from typing import Any, Dict, List, Optional
from pymongo import ASCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from pydantic_core import to_jsonable_python

from .mongo_client import INSTANCES, SNAPSHOTS, STAGES, TASKS, get_collection, health_check
from ..domain.enums import ACTIVE_INSTANCE_STATUSES, TaskStatus
from ..domain.errors import (
    AlreadyExistsError, ConcurrencyError, InstanceNotFoundError
)
from ..domain.models import (
    ApprovalInstance, ApprovalTask, AssignmentSnapshot, StageInstance
)
from ..utils.logger import get_logger
from ..utils.time import epoch_millis, utc_now

logger = get_logger(__name__)


def _serialize(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Convert enums, datetimes and models into their stored JSON form"""
    return to_jsonable_python(updates)


class InstanceRepository:
    """Repository for approval instances and their stages, tasks and snapshots"""

    def __init__(self, db: Optional[Database] = None):
        self._instances: Collection = get_collection(INSTANCES, db)
        self._stages: Collection = get_collection(STAGES, db)
        self._tasks: Collection = get_collection(TASKS, db)
        self._snapshots: Collection = get_collection(SNAPSHOTS, db)

    # =========================================================================
    # Instances
    # =========================================================================

    def create_instance(self, instance: ApprovalInstance) -> ApprovalInstance:
        """Insert an instance; the store refuses a second open instance per entity"""
        doc = instance.model_dump(mode="json")
        doc["_id"] = instance.instance_id

        try:
            self._instances.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"An open approval already exists for {instance.entity_name}/{instance.entity_id}",
                details={"entity_name": instance.entity_name, "entity_id": instance.entity_id},
                error_code="INSTANCE_ALREADY_OPEN"
            )

        logger.info(
            f"Created approval instance for {instance.entity_name}/{instance.entity_id}",
            extra={"tenant_id": instance.tenant_id, "instance_id": instance.instance_id}
        )
        return instance

    def get_instance(self, tenant_id: str, instance_id: str) -> Optional[ApprovalInstance]:
        """Get instance by ID"""
        doc = self._instances.find_one({"tenant_id": tenant_id, "instance_id": instance_id})
        if doc:
            doc.pop("_id", None)
            return ApprovalInstance.model_validate(doc)
        return None

    def find_active_for_entity(
        self,
        tenant_id: str,
        entity_name: str,
        entity_id: str
    ) -> Optional[ApprovalInstance]:
        """Get the open (or on-hold) instance for a business entity"""
        doc = self._instances.find_one({
            "tenant_id": tenant_id,
            "entity_name": entity_name,
            "entity_id": entity_id,
            "status": {"$in": [s.value for s in ACTIVE_INSTANCE_STATUSES]},
        })
        if doc:
            doc.pop("_id", None)
            return ApprovalInstance.model_validate(doc)
        return None

    def find_latest_for_entity(
        self,
        tenant_id: str,
        entity_name: str,
        entity_id: str
    ) -> Optional[ApprovalInstance]:
        """Get the most recently created instance for an entity, whatever its status"""
        doc = self._instances.find_one(
            {"tenant_id": tenant_id, "entity_name": entity_name, "entity_id": entity_id},
            sort=[("created_at", -1)]
        )
        if doc:
            doc.pop("_id", None)
            return ApprovalInstance.model_validate(doc)
        return None

    def update_instance(
        self,
        tenant_id: str,
        instance_id: str,
        expected_version: int,
        updates: Dict[str, Any]
    ) -> ApprovalInstance:
        """
        Update instance with optimistic concurrency control

        Args:
            tenant_id: Owning tenant
            instance_id: Instance to update
            expected_version: Version the caller read
            updates: Fields to set

        Returns:
            Updated instance

        Raises:
            InstanceNotFoundError: If instance doesn't exist
            ConcurrencyError: If version mismatch
        """
        set_doc = _serialize(updates)
        set_doc["updated_at"] = to_jsonable_python(utc_now())

        result = self._instances.find_one_and_update(
            {"tenant_id": tenant_id, "instance_id": instance_id, "version": expected_version},
            {"$set": set_doc, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER
        )

        if result is None:
            existing = self._instances.find_one(
                {"tenant_id": tenant_id, "instance_id": instance_id},
                {"version": 1}
            )
            if existing is None:
                raise InstanceNotFoundError(f"Instance {instance_id} not found")
            raise ConcurrencyError(
                f"Instance {instance_id} was modified by another request",
                details={"expected_version": expected_version, "actual_version": existing.get("version")}
            )

        result.pop("_id", None)
        return ApprovalInstance.model_validate(result)

    # -------------------------------------------------------------------------
    # Advisory lock
    # -------------------------------------------------------------------------

    def acquire_lock(
        self,
        tenant_id: str,
        instance_id: str,
        lock_token: str,
        lock_duration_seconds: int = 30
    ) -> bool:
        """
        Try to take the instance lock with one atomic find-and-modify.

        The lock does not bump ``version``; it only serializes writers.
        Expired locks (crashed holders) are taken over.
        """
        now_ms = epoch_millis()
        try:
            result = self._instances.find_one_and_update(
                {
                    "tenant_id": tenant_id,
                    "instance_id": instance_id,
                    "$or": [
                        {"lock_expires_ms": None},
                        {"lock_expires_ms": {"$lte": now_ms}}
                    ]
                },
                {"$set": {
                    "locked_by": lock_token,
                    "lock_expires_ms": now_ms + lock_duration_seconds * 1000
                }}
            )
        except PyMongoError as e:
            logger.error(
                f"Database error acquiring lock on instance {instance_id}: {e}",
                extra={"tenant_id": tenant_id, "instance_id": instance_id}
            )
            return False

        if result:
            logger.debug(
                f"Lock acquired on instance {instance_id}",
                extra={"instance_id": instance_id}
            )
            return True
        return False

    def release_lock(self, tenant_id: str, instance_id: str, lock_token: str) -> bool:
        """Release the lock if this token still holds it"""
        result = self._instances.update_one(
            {"tenant_id": tenant_id, "instance_id": instance_id, "locked_by": lock_token},
            {"$set": {"locked_by": None, "lock_expires_ms": None}}
        )
        return result.modified_count > 0

    # =========================================================================
    # Stages
    # =========================================================================

    def create_stages(self, stages: List[StageInstance]) -> List[StageInstance]:
        """Insert the stage records for an instance"""
        if not stages:
            return []
        docs = []
        for stage in stages:
            doc = stage.model_dump(mode="json")
            doc["_id"] = stage.stage_id
            docs.append(doc)
        self._stages.insert_many(docs)
        return stages

    def get_stages(self, tenant_id: str, instance_id: str) -> List[StageInstance]:
        """Stages of an instance ordered by stage number"""
        cursor = self._stages.find({"tenant_id": tenant_id, "instance_id": instance_id}).sort(
            "stage_no", ASCENDING
        )
        stages = []
        for doc in cursor:
            doc.pop("_id", None)
            stages.append(StageInstance.model_validate(doc))
        return stages

    def get_stage(self, tenant_id: str, stage_id: str) -> Optional[StageInstance]:
        """Get stage by ID"""
        doc = self._stages.find_one({"tenant_id": tenant_id, "stage_id": stage_id})
        if doc:
            doc.pop("_id", None)
            return StageInstance.model_validate(doc)
        return None

    def update_stage(
        self,
        tenant_id: str,
        stage_id: str,
        updates: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[StageInstance]:
        """Update a stage, optionally only when it is still in ``expected_status``"""
        query: Dict[str, Any] = {"tenant_id": tenant_id, "stage_id": stage_id}
        if expected_status is not None:
            query["status"] = expected_status
        result = self._stages.find_one_and_update(
            query,
            {"$set": _serialize(updates)},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None
        result.pop("_id", None)
        return StageInstance.model_validate(result)

    # =========================================================================
    # Tasks
    # =========================================================================

    def create_tasks(self, tasks: List[ApprovalTask]) -> List[ApprovalTask]:
        """Insert tasks"""
        if not tasks:
            return []
        docs = []
        for task in tasks:
            doc = task.model_dump(mode="json")
            doc["_id"] = task.task_id
            docs.append(doc)
        self._tasks.insert_many(docs)
        return tasks

    def get_task(self, tenant_id: str, task_id: str) -> Optional[ApprovalTask]:
        """Get task by ID"""
        doc = self._tasks.find_one({"tenant_id": tenant_id, "task_id": task_id})
        if doc:
            doc.pop("_id", None)
            return ApprovalTask.model_validate(doc)
        return None

    def get_tasks_for_stage(self, tenant_id: str, stage_id: str) -> List[ApprovalTask]:
        """All tasks of one stage (quorum input)"""
        return self._find_tasks({"tenant_id": tenant_id, "stage_id": stage_id})

    def get_tasks_for_instance(self, tenant_id: str, instance_id: str) -> List[ApprovalTask]:
        """All tasks of an instance"""
        return self._find_tasks({"tenant_id": tenant_id, "instance_id": instance_id})

    def find_pending_tasks_for_approvers(
        self,
        tenant_id: str,
        approver_ids: List[str]
    ) -> List[ApprovalTask]:
        """Pending tasks addressed to any of the given principal or group IDs"""
        if not approver_ids:
            return []
        return self._find_tasks({
            "tenant_id": tenant_id,
            "approver_id": {"$in": approver_ids},
            "status": TaskStatus.PENDING.value,
        })

    def find_pending_tasks_with_due(self, tenant_id: Optional[str] = None) -> List[ApprovalTask]:
        """Pending tasks that carry a due date, for one tenant or all of them"""
        query: Dict[str, Any] = {"status": TaskStatus.PENDING.value, "due_at": {"$ne": None}}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id
        return self._find_tasks(query)

    def _find_tasks(self, query: Dict[str, Any]) -> List[ApprovalTask]:
        cursor = self._tasks.find(query).sort([("stage_no", ASCENDING), ("created_at", ASCENDING)])
        tasks = []
        for doc in cursor:
            doc.pop("_id", None)
            tasks.append(ApprovalTask.model_validate(doc))
        return tasks

    def update_task(
        self,
        tenant_id: str,
        task_id: str,
        updates: Dict[str, Any],
        expected_status: Optional[TaskStatus] = None
    ) -> Optional[ApprovalTask]:
        """
        Update a task; with ``expected_status`` the write only lands if the
        task is still in that status, so a decided task is never overwritten.
        """
        query: Dict[str, Any] = {"tenant_id": tenant_id, "task_id": task_id}
        if expected_status is not None:
            query["status"] = expected_status.value
        result = self._tasks.find_one_and_update(
            query,
            {"$set": _serialize(updates)},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None
        result.pop("_id", None)
        return ApprovalTask.model_validate(result)

    def cancel_pending_tasks(
        self,
        tenant_id: str,
        instance_id: str,
        stage_id: Optional[str] = None,
        note: Optional[str] = None
    ) -> List[str]:
        """Cancel pending tasks of an instance (or one stage); returns their IDs"""
        query: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "instance_id": instance_id,
            "status": TaskStatus.PENDING.value,
        }
        if stage_id is not None:
            query["stage_id"] = stage_id

        task_ids = [doc["task_id"] for doc in self._tasks.find(query, {"task_id": 1})]
        if not task_ids:
            return []

        self._tasks.update_many(
            {**query, "task_id": {"$in": task_ids}},
            {"$set": _serialize({
                "status": TaskStatus.CANCELED,
                "decided_at": utc_now(),
                "decision_note": note,
            })}
        )
        logger.info(
            f"Canceled {len(task_ids)} pending tasks",
            extra={"tenant_id": tenant_id, "instance_id": instance_id, "stage_id": stage_id}
        )
        return task_ids

    def increment_reminder_count(self, tenant_id: str, task_id: str) -> None:
        """Count a sent reminder"""
        self._tasks.update_one(
            {"tenant_id": tenant_id, "task_id": task_id},
            {"$inc": {"reminder_count": 1}}
        )

    # =========================================================================
    # Assignment snapshots (write-once)
    # =========================================================================

    def create_snapshot(self, snapshot: AssignmentSnapshot) -> AssignmentSnapshot:
        """Insert a snapshot; a second snapshot for the same task is refused"""
        doc = snapshot.model_dump(mode="json")
        doc["_id"] = snapshot.snapshot_id
        if self._snapshots.find_one({"task_id": snapshot.task_id}, {"_id": 1}):
            raise AlreadyExistsError(f"Assignment snapshot for task {snapshot.task_id} already exists")
        self._snapshots.insert_one(doc)
        return snapshot

    def get_snapshot_for_task(self, tenant_id: str, task_id: str) -> Optional[AssignmentSnapshot]:
        """Get the assignment snapshot of a task"""
        doc = self._snapshots.find_one({"tenant_id": tenant_id, "task_id": task_id})
        if doc:
            doc.pop("_id", None)
            return AssignmentSnapshot.model_validate(doc)
        return None

    # =========================================================================
    # Health
    # =========================================================================

    def ping(self) -> Dict[str, Any]:
        """Health of the database backing the instances"""
        return health_check(self._instances.database)
