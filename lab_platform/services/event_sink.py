"""
Event Sinks - delivery of notification and audit events.

Every admission decision and lifecycle transition produces a LabEvent. Sinks
are invoked after the triggering mutation has committed, and a delivery
failure is logged and counted but never propagated back to that mutation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from lab_platform.core.logging_config import get_logger
from lab_platform.core.monitoring import event_delivery_failures_total

logger = get_logger(__name__)


class LabEventType:
    """Event types published by the engine"""
    ADMISSION_GRANTED = "admission_granted"
    ADMISSION_REJECTED = "admission_rejected"
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    TRANSITION_REJECTED = "transition_rejected"
    OPERATION_FAILED = "operation_failed"


@dataclass
class LabEvent:
    """Structured event addressed to the owning requester"""
    requester_id: int
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {
            "requester_id": self.requester_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


class EventSink(ABC):
    """Receiver of LabEvents"""

    name = "sink"

    @abstractmethod
    async def publish(self, event: LabEvent) -> None:
        ...


class LoggingEventSink(EventSink):
    """Writes events to the structured log"""

    name = "log"

    async def publish(self, event: LabEvent) -> None:
        logger.info(
            "lab_event",
            requester_id=event.requester_id,
            event_type=event.event_type,
            payload=event.payload,
            event_timestamp=event.timestamp.isoformat()
        )


class MongoEventSink(EventSink):
    """
    Stores events in a MongoDB collection.

    Indexes are created on first publish. Insert errors propagate to the
    caller; use `dispatch_event` to make delivery best-effort.
    """

    name = "mongodb"

    def __init__(self, mongo_db: AsyncIOMotorDatabase, collection_name: str = "lab_events"):
        self.collection = mongo_db[collection_name]
        self._initialized = False

    async def _ensure_indexes(self) -> None:
        if self._initialized:
            return
        await self.collection.create_index([("requester_id", ASCENDING), ("timestamp", DESCENDING)])
        await self.collection.create_index([("event_type", ASCENDING)])
        self._initialized = True

    async def publish(self, event: LabEvent) -> None:
        await self._ensure_indexes()
        await self.collection.insert_one(event.to_document())

    async def recent_for_requester(self, requester_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.collection.find(
            {"requester_id": requester_id},
            {"_id": 0}
        ).sort("timestamp", DESCENDING).limit(limit)
        return await cursor.to_list(length=limit)


class CompositeEventSink(EventSink):
    """Fans an event out to several sinks; one failing sink does not stop the rest"""

    name = "composite"

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    async def publish(self, event: LabEvent) -> None:
        for sink in self.sinks:
            await dispatch_event(sink, event)


class RecordingEventSink(EventSink):
    """Keeps events in memory, for scripts and tests"""

    name = "memory"

    def __init__(self):
        self.events: List[LabEvent] = []

    async def publish(self, event: LabEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[LabEvent]:
        return [e for e in self.events if e.event_type == event_type]


async def dispatch_event(sink: Optional[EventSink], event: LabEvent) -> bool:
    """
    Deliver an event without letting a sink failure escape.

    Returns:
        True if the sink accepted the event
    """
    if sink is None:
        return False
    try:
        await sink.publish(event)
        return True
    except Exception as e:
        event_delivery_failures_total.labels(sink=sink.name).inc()
        logger.error(
            "event_delivery_failed",
            sink=sink.name,
            event_type=event.event_type,
            requester_id=event.requester_id,
            error=str(e),
            exc_info=True
        )
        return False


def create_event_sink(mongo_db: Optional[AsyncIOMotorDatabase] = None, collection_name: str = "lab_events") -> EventSink:
    """Logging sink always, plus MongoDB when a database is configured"""
    sinks: List[EventSink] = [LoggingEventSink()]
    if mongo_db is not None:
        sinks.append(MongoEventSink(mongo_db, collection_name))
    return CompositeEventSink(sinks)
