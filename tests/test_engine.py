"""
Engine, Notifier and Memory Store Tests
=======================================

Tests for the mock inference engine, the logging notifier and the
in-memory store used for dry runs.
"""

import asyncio

import pytest

from streamwatch_agent.detection import MockInferenceEngine
from streamwatch_agent.errors import InferenceError
from streamwatch_agent.models import Channel, Detection, DetectionConfig
from streamwatch_agent.notifier import LoggingNotifier
from streamwatch_agent.stores import MemoryStore

from conftest import make_jpeg


class TestMockInferenceEngine:
    """Tests for MockInferenceEngine."""

    def test_cycles_through_script(self):
        engine = MockInferenceEngine(script=[
            [Detection(object_class="cat", confidence=0.9)],
            [],
        ])

        async def run():
            await engine.initialize()
            return [await engine.detect(make_jpeg()) for _ in range(3)]

        results = asyncio.run(run())
        assert [len(r.detections) for r in results] == [1, 0, 1]
        assert engine.call_count == 3

    def test_requires_initialize(self):
        with pytest.raises(InferenceError):
            asyncio.run(MockInferenceEngine().detect(make_jpeg()))

    def test_rejects_empty_image(self):
        engine = MockInferenceEngine()

        async def run():
            await engine.initialize()
            await engine.detect(b"")

        with pytest.raises(InferenceError):
            asyncio.run(run())

    def test_detection_accepts_wire_alias(self):
        detection = Detection.model_validate({"class": "dog", "confidence": 0.5})
        assert detection.object_class == "dog"
        assert detection.model_dump(by_alias=True)["class"] == "dog"


class TestLoggingNotifier:
    """Tests for LoggingNotifier."""

    def test_keeps_recent_messages(self):
        notifier = LoggingNotifier(history_size=2)

        async def run():
            for i in range(3):
                await notifier.say("somestreamer", f"message {i}")

        asyncio.run(run())
        assert notifier.sent_count == 2
        assert [m["message"] for m in notifier.recent()] == ["message 1", "message 2"]
        assert notifier.recent(limit=0) == []


class TestMemoryStore:
    """Tests for MemoryStore."""

    def test_one_config_per_channel(self):
        store = MemoryStore()
        store.add_config(DetectionConfig(id=1, channel_id=1))
        with pytest.raises(ValueError):
            store.add_config(DetectionConfig(id=2, channel_id=1))

    def test_update_ignores_unknown_fields(self):
        store = MemoryStore()
        store.add_channel(Channel(id=1, username="a"))
        store.add_config(DetectionConfig(id=1, channel_id=1))

        updated = asyncio.run(store.update_config(1, is_enabled=True, channel_id=99))

        assert updated.is_enabled
        assert updated.channel_id == 1
        assert asyncio.run(store.get_enabled_configs()) == [updated]
        assert asyncio.run(store.update_config(5, is_enabled=True)) is None
