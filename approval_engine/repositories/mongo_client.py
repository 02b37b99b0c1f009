"""MongoDB Client - Connection and Collection Management"""
from typing import Any, Dict, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None

# Collection names
TEMPLATES = "approval_templates"
INSTANCES = "approval_instances"
STAGES = "approval_stages"
TASKS = "approval_tasks"
SNAPSHOTS = "approval_assignment_snapshots"
EVENTS = "approval_events"
ESCALATIONS = "approval_escalations"
APPROVER_CACHE = "approver_cache"
PRINCIPALS = "principals"
GROUPS = "principal_groups"
ROLE_GRANTS = "role_grants"
ORG_UNITS = "org_units"
TRANSITION_GATES = "lifecycle_transition_gates"


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            tz_aware=True,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str, db: Optional[Database] = None) -> Collection:
    """Get a collection from the given database (or the application database)"""
    database = db if db is not None else get_database()
    return database[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes(db: Optional[Database] = None) -> None:
    """Create all required indexes"""
    db = db if db is not None else get_database()
    logger.info("Creating MongoDB indexes...")

    # Templates: one row per version, one active version per code
    templates = db[TEMPLATES]
    templates.create_index("template_id", unique=True)
    templates.create_index(
        [("tenant_id", ASCENDING), ("code", ASCENDING), ("version_no", DESCENDING)],
        unique=True
    )
    templates.create_index(
        [("tenant_id", ASCENDING), ("code", ASCENDING)],
        unique=True,
        partialFilterExpression={"is_active": True},
        name="one_active_version_per_code"
    )

    # Instances: one open instance per business entity
    instances = db[INSTANCES]
    instances.create_index("instance_id", unique=True)
    instances.create_index(
        [("tenant_id", ASCENDING), ("entity_name", ASCENDING), ("entity_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": {"$in": ["open", "on_hold"]}},
        name="one_open_instance_per_entity"
    )
    instances.create_index([("tenant_id", ASCENDING), ("status", ASCENDING)])

    stages = db[STAGES]
    stages.create_index("stage_id", unique=True)
    stages.create_index([("instance_id", ASCENDING), ("stage_no", ASCENDING)], unique=True)

    tasks = db[TASKS]
    tasks.create_index("task_id", unique=True)
    tasks.create_index("stage_id")
    tasks.create_index("instance_id")
    tasks.create_index([("tenant_id", ASCENDING), ("approver_id", ASCENDING), ("status", ASCENDING)])
    tasks.create_index([("tenant_id", ASCENDING), ("status", ASCENDING), ("due_at", ASCENDING)])

    snapshots = db[SNAPSHOTS]
    snapshots.create_index("snapshot_id", unique=True)
    snapshots.create_index("task_id", unique=True)

    events = db[EVENTS]
    events.create_index("event_id", unique=True)
    events.create_index([("instance_id", ASCENDING), ("occurred_at", ASCENDING)])
    events.create_index("correlation_id")

    escalations = db[ESCALATIONS]
    escalations.create_index("escalation_id", unique=True)
    escalations.create_index([("instance_id", ASCENDING), ("occurred_at", ASCENDING)])

    # Approver cache entries expire through a TTL index
    approver_cache = db[APPROVER_CACHE]
    approver_cache.create_index("expires_at", expireAfterSeconds=0)

    db[PRINCIPALS].create_index([("tenant_id", ASCENDING), ("principal_id", ASCENDING)], unique=True)
    db[PRINCIPALS].create_index([("tenant_id", ASCENDING), ("org_unit_ids", ASCENDING)])
    db[GROUPS].create_index([("tenant_id", ASCENDING), ("code", ASCENDING)], unique=True)
    db[ROLE_GRANTS].create_index([("tenant_id", ASCENDING), ("role_code", ASCENDING)])
    db[ORG_UNITS].create_index([("tenant_id", ASCENDING), ("org_unit_id", ASCENDING)], unique=True)
    db[ORG_UNITS].create_index([("tenant_id", ASCENDING), ("code", ASCENDING)])
    db[TRANSITION_GATES].create_index([("tenant_id", ASCENDING), ("approval_template_id", ASCENDING)])

    logger.info("MongoDB indexes created successfully")


def health_check(db: Optional[Database] = None) -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        database = db if db is not None else get_database()
        database.command("ping")
        return {
            "status": "healthy",
            "database": database.name,
            "connection": "ok"
        }
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
