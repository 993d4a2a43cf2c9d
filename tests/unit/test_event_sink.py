"""Unit tests for event sinks"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from lab_platform.core.monitoring import registry
from lab_platform.services.event_sink import (
    CompositeEventSink,
    LabEvent,
    LabEventType,
    LoggingEventSink,
    MongoEventSink,
    RecordingEventSink,
    create_event_sink,
    dispatch_event
)


@pytest.fixture
def mock_collection():
    collection = AsyncMock()
    collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id="event_id"))
    collection.create_index = AsyncMock()
    return collection


@pytest.fixture
def mock_mongo_db(mock_collection):
    """Mock MongoDB"""
    db = MagicMock()
    db.__getitem__ = MagicMock(return_value=mock_collection)
    return db


def _event(event_type=LabEventType.CREATED) -> LabEvent:
    return LabEvent(requester_id=7, event_type=event_type, payload={"container_id": 1})


def _failures(sink_name: str) -> float:
    value = registry.get_sample_value("lab_event_delivery_failures_total", {"sink": sink_name})
    return value or 0.0


class ExplodingSink(RecordingEventSink):
    name = "exploding"

    async def publish(self, event):
        raise ConnectionError("sink unavailable")


@pytest.mark.asyncio
async def test_mongo_sink_inserts_document(mock_mongo_db, mock_collection):
    sink = MongoEventSink(mock_mongo_db, "lab_events")
    event = _event()

    await sink.publish(event)

    mock_mongo_db.__getitem__.assert_called_with("lab_events")
    mock_collection.insert_one.assert_awaited_once()
    document = mock_collection.insert_one.call_args[0][0]
    assert document["requester_id"] == 7
    assert document["event_type"] == "created"
    assert document["payload"] == {"container_id": 1}
    assert document["timestamp"] == event.timestamp


@pytest.mark.asyncio
async def test_mongo_sink_creates_indexes_once(mock_mongo_db, mock_collection):
    sink = MongoEventSink(mock_mongo_db)

    await sink.publish(_event())
    await sink.publish(_event())

    assert mock_collection.create_index.await_count == 2
    assert mock_collection.insert_one.await_count == 2


@pytest.mark.asyncio
async def test_dispatch_swallows_sink_failure():
    sink = ExplodingSink()
    before = _failures("exploding")

    delivered = await dispatch_event(sink, _event())

    assert delivered is False
    assert _failures("exploding") == before + 1


@pytest.mark.asyncio
async def test_dispatch_without_sink():
    assert await dispatch_event(None, _event()) is False


@pytest.mark.asyncio
async def test_composite_continues_past_failing_sink():
    recorder = RecordingEventSink()
    sink = CompositeEventSink([ExplodingSink(), recorder])

    assert await dispatch_event(sink, _event(LabEventType.STATUS_CHANGED)) is True
    assert len(recorder.of_type(LabEventType.STATUS_CHANGED)) == 1


@pytest.mark.asyncio
async def test_logging_sink_accepts_event():
    await LoggingEventSink().publish(_event())


def test_create_event_sink_with_and_without_mongo(mock_mongo_db):
    without = create_event_sink()
    assert [type(s) for s in without.sinks] == [LoggingEventSink]

    with_mongo = create_event_sink(mock_mongo_db, "events")
    assert [type(s) for s in with_mongo.sinks] == [LoggingEventSink, MongoEventSink]
