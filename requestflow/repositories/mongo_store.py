"""MongoDB store - Persistent implementation of the store interfaces"""
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from ..domain.models import (
    AuditEvent, Delegation, RequestRecord, StepInstance, TaskInstance
)
from ..domain.enums import RequestStatus, StepStatus, TaskStatus
from ..domain.errors import ConcurrencyError, RequestNotFoundError
from . import mongo_client
from .mongo_client import get_database
from ..config.settings import settings
from ..utils.idgen import generate_lock_token
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class MongoStore:
    """
    Store backed by MongoDB

    Writers for one request are serialized by a lease: request_lock holds a
    document in request_locks for as long as the caller plans and commits,
    so a second writer cannot read step state halfway through another
    writer's commit. commit_transition still claims the next version on the
    request document first, which turns a commit computed from a stale
    snapshot into a ConcurrencyError.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        lock_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.db = db if db is not None else get_database()
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.lock_timeout_seconds
        self.clock = clock
        self._definitions = self.db[mongo_client.DEFINITIONS]
        self._requests = self.db[mongo_client.REQUESTS]
        self._steps = self.db[mongo_client.STEPS]
        self._tasks = self.db[mongo_client.TASKS]
        self._users = self.db[mongo_client.USERS]
        self._delegations = self.db[mongo_client.DELEGATIONS]
        self._sla = self.db[mongo_client.SLA_CONFIG]
        self._audit = self.db[mongo_client.AUDIT_EVENTS]
        self._locks = self.db[mongo_client.REQUEST_LOCKS]

    # =========================================================================
    # Definitions, directory, SLA configuration
    # =========================================================================

    def load_definition(self, service_key: str) -> Optional[Dict[str, Any]]:
        doc = self._definitions.find_one({"service_key": service_key})
        if doc is None:
            return None
        return doc.get("definition")

    def get_manager(self, user_id: str) -> Optional[str]:
        doc = self._users.find_one({"user_id": user_id}, {"manager_id": 1})
        return doc.get("manager_id") if doc else None

    def list_active_delegations_from(self, user_id: str, at: datetime) -> List[Delegation]:
        return self._find_delegations({"from_user": user_id}, at)

    def list_active_delegations_to(self, user_id: str, at: datetime) -> List[Delegation]:
        return self._find_delegations({"to_user": user_id}, at)

    def _find_delegations(self, query: Dict[str, Any], at: datetime) -> List[Delegation]:
        query.update({"active": True, "start": {"$lte": at}, "end": {"$gt": at}})
        delegations = []
        for doc in self._delegations.find(query):
            doc.pop("_id", None)
            delegations.append(Delegation.model_validate(doc))
        return delegations

    def get_step_duration_minutes(self, service_key: str, step_key: str) -> Optional[int]:
        doc = self._sla.find_one({"service_key": service_key, "step_key": step_key})
        if doc is None:
            return None
        return doc.get("duration_minutes")

    # =========================================================================
    # Step history
    # =========================================================================

    def list_completed_steps(self, request_id: str, step_keys: Iterable[str]) -> Set[str]:
        keys = list(step_keys)
        if not keys:
            return set()
        return set(self._steps.distinct("step_key", {
            "request_id": request_id,
            "step_key": {"$in": keys},
            "status": StepStatus.COMPLETED.value
        }))

    # =========================================================================
    # Requests
    # =========================================================================

    @contextmanager
    def request_lock(self, request_id: str) -> Iterator[None]:
        """
        Hold the lease on a request for the duration of the block

        Raises:
            ConcurrencyError: If another writer keeps the lease past lock_timeout
        """
        token = generate_lock_token()
        give_up_at = time.monotonic() + self.lock_timeout
        while not self._acquire_lease(request_id, token):
            if time.monotonic() >= give_up_at:
                raise ConcurrencyError(
                    f"Request {request_id} is being updated by another writer",
                    details={"request_id": request_id}
                )
            time.sleep(settings.lock_poll_seconds)
        try:
            yield
        finally:
            self._locks.delete_one({"_id": request_id, "owner": token})

    def _acquire_lease(self, request_id: str, token: str) -> bool:
        now = self.clock()
        lease = {"owner": token, "locked_until": now + timedelta(seconds=settings.lock_ttl_seconds)}
        try:
            self._locks.insert_one({"_id": request_id, **lease})
            return True
        except DuplicateKeyError:
            pass

        # Holder crashed or overran its lease
        taken = self._locks.find_one_and_update(
            {"_id": request_id, "locked_until": {"$lt": now}},
            {"$set": lease}
        )
        if taken is None:
            return False
        logger.warning(
            f"Took over expired lease on {request_id}",
            extra={"request_id": request_id}
        )
        return True

    def create_request(self, record: RequestRecord, steps: List[StepInstance], event: AuditEvent) -> None:
        self._requests.insert_one(record.model_dump())
        if steps:
            self._steps.insert_many([s.model_dump() for s in steps])
        self._audit.insert_one(event.model_dump())
        logger.info(f"Created request: {record.request_id}", extra={"request_id": record.request_id})

    def get_request(self, request_id: str) -> Optional[RequestRecord]:
        doc = self._requests.find_one({"request_id": request_id})
        if doc is None:
            return None
        doc.pop("_id", None)
        return RequestRecord.model_validate(doc)

    def list_active_steps(self, request_id: str) -> List[StepInstance]:
        cursor = self._steps.find(
            {"request_id": request_id, "status": StepStatus.ACTIVE.value}
        ).sort("started_at", ASCENDING)
        return [StepInstance.model_validate(_strip_id(doc)) for doc in cursor]

    def list_pending_tasks(self, request_id: str) -> List[TaskInstance]:
        cursor = self._tasks.find(
            {"request_id": request_id, "status": TaskStatus.PENDING.value}
        ).sort("created_at", ASCENDING)
        return [TaskInstance.model_validate(_strip_id(doc)) for doc in cursor]

    def find_pending_tasks(self, user_ids: List[str], roles: List[str]) -> List[TaskInstance]:
        cursor = self._tasks.find({
            "status": TaskStatus.PENDING.value,
            "$or": [
                {"assigned_user": {"$in": list(user_ids)}},
                {"assigned_role": {"$in": list(roles)}},
            ]
        }).sort("created_at", ASCENDING)
        return [TaskInstance.model_validate(_strip_id(doc)) for doc in cursor]

    def commit_transition(
        self,
        request_id: str,
        expected_version: int,
        status: RequestStatus,
        steps_to_complete: List[str],
        new_steps: List[StepInstance],
        new_tasks: List[TaskInstance],
        event: AuditEvent,
        now: datetime,
        closed_task_status: TaskStatus = TaskStatus.COMPLETED,
        form_data: Optional[Dict[str, Any]] = None
    ) -> RequestRecord:
        updates: Dict[str, Any] = {
            "status": status.value,
            "updated_at": now,
            "version": expected_version + 1
        }
        if form_data is not None:
            updates["form_data"] = form_data

        result = self._requests.find_one_and_update(
            {"request_id": request_id, "version": expected_version},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            if self._requests.find_one({"request_id": request_id}):
                raise ConcurrencyError(
                    f"Request {request_id} was modified. Please refresh and try again.",
                    details={"expected_version": expected_version}
                )
            raise RequestNotFoundError(f"Request {request_id} not found")

        if steps_to_complete:
            self._steps.update_many(
                {
                    "request_id": request_id,
                    "step_key": {"$in": list(steps_to_complete)},
                    "status": StepStatus.ACTIVE.value
                },
                {"$set": {"status": StepStatus.COMPLETED.value, "completed_at": now}}
            )
            self._tasks.update_many(
                {
                    "request_id": request_id,
                    "step_key": {"$in": list(steps_to_complete)},
                    "status": TaskStatus.PENDING.value
                },
                {"$set": {"status": closed_task_status.value, "completed_at": now}}
            )
        if new_steps:
            self._steps.insert_many([s.model_dump() for s in new_steps])
        if new_tasks:
            self._tasks.insert_many([t.model_dump() for t in new_tasks])
        self._audit.insert_one(event.model_dump())

        logger.info(
            f"Committed transition for {request_id}: {status.value}",
            extra={"request_id": request_id, "status": status.value}
        )
        return RequestRecord.model_validate(_strip_id(result))

    def list_audit_events(self, request_id: str) -> List[AuditEvent]:
        cursor = self._audit.find({"request_id": request_id}).sort("timestamp", ASCENDING)
        return [AuditEvent.model_validate(_strip_id(doc)) for doc in cursor]


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("_id", None)
    return doc
