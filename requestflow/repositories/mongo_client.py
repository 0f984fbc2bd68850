"""MongoDB Client - Connection and Collection Management"""
from typing import Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo import ASCENDING
from pymongo.errors import ConnectionFailure

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


# Collection names
DEFINITIONS = "workflow_definitions"
REQUESTS = "requests"
STEPS = "step_instances"
TASKS = "task_instances"
USERS = "users"
DELEGATIONS = "delegations"
SLA_CONFIG = "sla_config"
AUDIT_EVENTS = "audit_events"
REQUEST_LOCKS = "request_locks"


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
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


def create_indexes(db: Optional[Database] = None) -> None:
    """Create all required indexes"""
    db = db if db is not None else get_database()
    logger.info("Creating MongoDB indexes...")

    db[DEFINITIONS].create_index("service_key", unique=True)

    db[REQUESTS].create_index("request_id", unique=True)
    db[REQUESTS].create_index([("service_key", ASCENDING), ("status", ASCENDING)])

    db[STEPS].create_index([("request_id", ASCENDING), ("step_key", ASCENDING), ("status", ASCENDING)])
    db[STEPS].create_index("step_instance_id", unique=True)

    db[TASKS].create_index("task_id", unique=True)
    db[TASKS].create_index([("request_id", ASCENDING), ("status", ASCENDING)])
    db[TASKS].create_index([("assigned_user", ASCENDING), ("status", ASCENDING)])
    db[TASKS].create_index([("assigned_role", ASCENDING), ("status", ASCENDING)])

    db[USERS].create_index("user_id", unique=True)
    db[DELEGATIONS].create_index([("from_user", ASCENDING), ("active", ASCENDING)])
    db[DELEGATIONS].create_index([("to_user", ASCENDING), ("active", ASCENDING)])
    db[SLA_CONFIG].create_index([("service_key", ASCENDING), ("step_key", ASCENDING)], unique=True)
    db[AUDIT_EVENTS].create_index([("request_id", ASCENDING), ("timestamp", ASCENDING)])
    # Abandoned leases are dropped by the server once expired
    db[REQUEST_LOCKS].create_index("locked_until", expireAfterSeconds=0)

    logger.info("MongoDB indexes created")
