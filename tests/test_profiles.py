"""Tests for companion_core.storage.profiles."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from companion_core.paths import Paths
from companion_core.storage.atomic import AtomicStore
from companion_core.storage.profiles import SUMMARY_HEADER, ProfileMemory


class SettableClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def paths(tmp_path):
    return Paths(root=tmp_path / "data")


@pytest.fixture
def clock():
    return SettableClock()


@pytest.fixture
def memory(paths, clock):
    return ProfileMemory(AtomicStore(paths.user_memories), clock=clock)


class TestProfileShape:
    async def test_default_profile(self, memory):
        profile = await memory.get_profile("u1")
        assert profile["academicInfo"]["weakSubjects"] == []
        assert profile["emotionalProfile"]["stressLevel"] == "normal"
        assert profile["createdAt"] == profile["lastUpdated"]

    async def test_missing_fields_filled(self, memory):
        await memory.store.write({"u1": {"personalInfo": {"name": "Kasun"}}})
        profile = await memory.get_profile("u1")
        assert profile["personalInfo"]["name"] == "Kasun"
        assert profile["personalInfo"]["hobbies"] == []
        assert profile["lifeEvents"]["recentEvents"] == []


class TestUpdateMemory:
    async def test_weak_subjects_scenario(self, memory, clock):
        await memory.get_profile("u1")
        before = (await memory.update_memory("u1", "personalInfo", {"name": "Kasun"}))["lastUpdated"]
        clock.now += timedelta(minutes=1)
        await memory.update_memory(
            "u1", "academicInfo", {"weakSubjects": ["Chemistry"]}, merge=True,
        )
        profile = await memory.get_profile("u1")
        assert profile["academicInfo"]["weakSubjects"] == ["Chemistry"]
        assert profile["academicInfo"]["strongSubjects"] == []
        assert profile["lastUpdated"] > before

    async def test_merge_keeps_other_fields(self, memory):
        await memory.store_personal_info("u1", {"name": "Kasun"})
        await memory.store_personal_info("u1", {"school": "Royal College"})
        info = (await memory.get_profile("u1"))["personalInfo"]
        assert info["name"] == "Kasun"
        assert info["school"] == "Royal College"

    async def test_replace_without_merge(self, memory):
        await memory.update_memory("u1", "contacts", {"amma": "0771"}, merge=False)
        await memory.update_memory("u1", "contacts", {"thaththa": "0772"}, merge=False)
        assert (await memory.get_profile("u1"))["contacts"] == {"thaththa": "0772"}

    async def test_clear(self, memory):
        await memory.store_personal_info("u1", {"name": "Kasun"})
        assert await memory.clear_memory("u1") is True
        assert (await memory.get_profile("u1"))["personalInfo"]["name"] is None


class TestArrays:
    async def test_recent_events_scenario(self, memory):
        for i in range(1, 17):
            await memory.add_to_memory_array(
                "u1", "lifeEvents", "recentEvents", f"Passed exam {i}", max_items=15,
            )
        events = (await memory.get_profile("u1"))["lifeEvents"]["recentEvents"]
        assert len(events) == 15
        assert events[0]["content"] == "Passed exam 16"
        assert events[-1]["content"] == "Passed exam 2"

    async def test_store_life_event_cap(self, memory):
        for i in range(20):
            await memory.store_life_event("u1", f"event {i}")
        events = (await memory.get_profile("u1"))["lifeEvents"]["recentEvents"]
        assert len(events) == 15


class TestConvenienceWriters:
    async def test_store_relationship(self, memory, clock):
        await memory.store_relationship("u1", "friends", "Nimal", {"relationship": "best friend"})
        friends = (await memory.get_profile("u1"))["relationships"]["friends"]
        assert friends["nimal"]["name"] == "Nimal"
        assert friends["nimal"]["relationship"] == "best friend"
        assert friends["nimal"]["lastMentioned"] == "2026-10-18T09:00:00.000Z"

    async def test_store_relationship_new_kind(self, memory):
        await memory.store_relationship("u1", "coaches", "Sir Perera")
        relationships = (await memory.get_profile("u1"))["relationships"]
        assert "sir perera" in relationships["coaches"]
        assert relationships["friends"] == {}

    async def test_store_emotional_context(self, memory):
        await memory.store_emotional_context("u1", {"mood": "stressed", "traits": ["shy"]})
        emotional = (await memory.get_profile("u1"))["emotionalProfile"]
        assert emotional["currentMood"] == "stressed"
        assert emotional["stressLevel"] == "normal"
        assert emotional["personalityTraits"] == ["shy"]
        assert emotional["supportNeeds"] == []

    async def test_store_conversation_context(self, memory):
        for i in range(12):
            await memory.store_conversation_context("u1", {"topic": f"t{i}"})
        await memory.store_conversation_context(
            "u1", {"issue": "exam stress", "remember": "Physics paper on Monday"},
        )
        ctx = (await memory.get_profile("u1"))["conversationContext"]
        assert len(ctx["lastTopics"]) == 10
        assert ctx["lastTopics"][0]["topic"] == "t11"
        assert ctx["ongoingIssues"][0]["status"] == "ongoing"
        assert ctx["thingsToRemember"][0]["importance"] == "medium"
        assert ctx["lastInteraction"] is not None


class TestSummary:
    async def test_empty_profile(self, memory):
        assert await memory.memory_summary("u1") == SUMMARY_HEADER

    async def test_sections(self, memory):
        await memory.store_personal_info("u1", {"name": "Kasun", "hobbies": ["cricket"]})
        await memory.store_academic_info("u1", {"stream": "Maths", "weakSubjects": ["Chemistry"]})
        await memory.store_relationship("u1", "crushes", "Sachini")
        await memory.store_life_event("u1", "Won the quiz")
        summary = await memory.memory_summary("u1")
        assert "- Name: Kasun" in summary
        assert "- Hobbies: cricket" in summary
        assert "- Stream: Maths" in summary
        assert "- Weak Subjects: Chemistry" in summary
        assert "- Sachini: friend" in summary
        assert "- Won the quiz" in summary


class TestStats:
    async def test_counts(self, memory):
        await memory.store_personal_info("u1", {"name": "Kasun"})
        stats = await memory.stats()
        assert stats["totalUsers"] == 1
        assert stats["totalMemories"] > 0


class TestFields:
    async def test_set_field_replace_and_merge(self, memory):
        await memory.set_field("u1", "lifeEvents", "importantDates", {"exam": "Nov"})
        await memory.set_field("u1", "lifeEvents", "importantDates", {"trip": "Dec"}, merge=True)
        dates = (await memory.get_profile("u1"))["lifeEvents"]["importantDates"]
        assert dates == {"exam": "Nov", "trip": "Dec"}

    async def test_delete_field_subkey(self, memory):
        await memory.store_relationship("u1", "friends", "Nimal")
        assert await memory.delete_field("u1", "relationships", "friends", "nimal") is True
        assert (await memory.get_profile("u1"))["relationships"]["friends"] == {}

    async def test_delete_field_for_unknown_user(self, memory):
        assert await memory.delete_field("ghost", "personalInfo", "name") is False
        assert await memory.keys() == []
