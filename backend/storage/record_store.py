"""
Record Store
============
Collection-oriented persistence used as the system of record by the
billing core. Every record is a flat JSON dict keyed by its "id".

Semantics:
- update() is a shallow merge and last-write-wins (no version check)
- query() filters are equality, list membership, or operator maps
  such as {">=": "2024-01-01", "<": "2024-02-01"}
- returned dicts are copies; mutating them never touches the store
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from schemas.errors import NotFound


class Collection(str, Enum):
    PAYMENT_LINKS = "Payment_Links"
    INVOICES = "Invoices"
    REMINDER_SCHEDULES = "Reminder_Schedules"
    AUTOMATION_RULES = "Automation_Rules"
    WORKFLOW_EXECUTIONS = "Workflow_Executions"
    AUTOMATION_LOGS = "Automation_Logs"
    NOTIFICATION_TEMPLATES = "Notification_Templates"
    CLIENTS = "Clients"
    PROJECTS = "Projects"
    TASKS = "Tasks"
    LATE_FEE_RULES = "Late_Fee_Rules"
    LATE_FEES = "Late_Fees"
    IN_APP_NOTIFICATIONS = "In_App_Notifications"


Record = Dict[str, Any]
Filters = Dict[str, Any]

_OPERATORS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a is not None and a > b,
    ">=": lambda a, b: a is not None and a >= b,
    "<": lambda a, b: a is not None and a < b,
    "<=": lambda a, b: a is not None and a <= b,
}


def collection_name(collection) -> str:
    return collection.value if isinstance(collection, Collection) else str(collection)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def matches(record: Record, filters: Optional[Filters]) -> bool:
    """True when the record satisfies every filter clause."""
    if not filters:
        return True
    for field, expected in filters.items():
        actual = record.get(field)
        if isinstance(expected, (list, tuple, set)):
            if actual not in [_plain(v) for v in expected]:
                return False
        elif isinstance(expected, dict):
            for op, operand in expected.items():
                check = _OPERATORS.get(op)
                if check is None:
                    raise ValueError(f"Unsupported filter operator: {op}")
                try:
                    if not check(actual, _plain(operand)):
                        return False
                except TypeError:
                    return False
        elif actual != _plain(expected):
            return False
    return True


class RecordStore(ABC):
    """Abstract transactional collection store."""

    @abstractmethod
    async def create(self, collection, record: Record) -> Record:
        pass

    @abstractmethod
    async def read(self, collection, record_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    async def read_all(self, collection) -> List[Record]:
        pass

    @abstractmethod
    async def update(self, collection, record_id: str, changes: Record) -> Record:
        """Shallow-merge changes into an existing record. Raises NotFound."""
        pass

    @abstractmethod
    async def delete(self, collection, record_id: str) -> bool:
        pass

    @abstractmethod
    async def query(self, collection, filters: Optional[Filters] = None) -> List[Record]:
        pass

    async def batch_create(self, collection, records: List[Record]) -> List[Record]:
        created = []
        for record in records:
            created.append(await self.create(collection, record))
        return created

    async def close(self) -> None:
        return None


class InMemoryRecordStore(RecordStore):
    """In-process store for development and tests."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Record]] = {}
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="record_store")

    def _bucket(self, collection) -> Dict[str, Record]:
        return self._data.setdefault(collection_name(collection), {})

    async def create(self, collection, record: Record) -> Record:
        stored = copy.deepcopy(record)
        stored.setdefault("id", str(uuid.uuid4()))
        async with self._lock:
            self._bucket(collection)[stored["id"]] = stored
        self._logger.debug("record_created", collection=collection_name(collection), id=stored["id"])
        return copy.deepcopy(stored)

    async def read(self, collection, record_id: str) -> Optional[Record]:
        async with self._lock:
            record = self._bucket(collection).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    async def read_all(self, collection) -> List[Record]:
        async with self._lock:
            return [copy.deepcopy(r) for r in self._bucket(collection).values()]

    async def update(self, collection, record_id: str, changes: Record) -> Record:
        async with self._lock:
            bucket = self._bucket(collection)
            if record_id not in bucket:
                raise NotFound(f"{collection_name(collection)} record {record_id} not found")
            merged = {**bucket[record_id], **copy.deepcopy(changes), "id": record_id}
            bucket[record_id] = merged
            return copy.deepcopy(merged)

    async def delete(self, collection, record_id: str) -> bool:
        async with self._lock:
            return self._bucket(collection).pop(record_id, None) is not None

    async def query(self, collection, filters: Optional[Filters] = None) -> List[Record]:
        async with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._bucket(collection).values()
                if matches(r, filters)
            ]
