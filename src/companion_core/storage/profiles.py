"""Per-user memory profiles stored in one JSON document."""

from __future__ import annotations

import logging
from typing import Any

from .documents import CategoryKind, KeyedDocumentRepository

log = logging.getLogger(__name__)

MAX_RECENT_EVENTS = 15
MAX_LAST_TOPICS = 10
MAX_THINGS_TO_REMEMBER = 20

SUMMARY_HEADER = "=== USER MEMORY PROFILE ===\n\n"


def empty_profile(now: str) -> dict[str, Any]:
    """A fresh profile with every category at its default."""
    return {
        "personalInfo": {
            "name": None,
            "age": None,
            "school": None,
            "grade": None,
            "subjects": [],
            "hobbies": [],
            "family": {},
            "location": None,
        },
        "relationships": {
            "friends": {},
            "crushes": {},
            "family": {},
            "teachers": {},
        },
        "preferences": {
            "favoriteSubjects": [],
            "dislikedSubjects": [],
            "favoriteFood": [],
            "favoriteMovies": [],
            "favoriteMusic": [],
            "favoriteColors": [],
        },
        "emotionalProfile": {
            "currentMood": None,
            "stressLevel": "normal",
            "personalityTraits": [],
            "emotionalPatterns": [],
            "supportNeeds": [],
        },
        "academicInfo": {
            "stream": None,
            "currentGrade": None,
            "strongSubjects": [],
            "weakSubjects": [],
            "examSchedule": {},
            "studyHabits": [],
            "academicGoals": [],
        },
        "lifeEvents": {
            "importantDates": {},
            "achievements": [],
            "challenges": [],
            "goals": [],
            "recentEvents": [],
        },
        "conversationContext": {
            "lastTopics": [],
            "ongoingIssues": [],
            "promisesToKeep": [],
            "thingsToRemember": [],
            "lastInteraction": None,
        },
        "contacts": {},
        "createdAt": now,
        "lastUpdated": now,
    }


class ProfileMemory(KeyedDocumentRepository):
    """User key -> memory profile.

    Every category of the profile is a record, so ``update_entity`` with
    ``merge=True`` overlays fields instead of replacing the category.
    """

    CATEGORY_KINDS = {
        "personalInfo": CategoryKind.RECORD,
        "relationships": CategoryKind.RECORD,
        "preferences": CategoryKind.RECORD,
        "emotionalProfile": CategoryKind.RECORD,
        "academicInfo": CategoryKind.RECORD,
        "lifeEvents": CategoryKind.RECORD,
        "conversationContext": CategoryKind.RECORD,
        "contacts": CategoryKind.RECORD,
        "createdAt": CategoryKind.SCALAR,
        "lastUpdated": CategoryKind.SCALAR,
    }

    def default_entity(self) -> dict[str, Any]:
        return empty_profile(self.now_iso())

    async def get_profile(self, key: str) -> dict[str, Any]:
        """The stored profile with any missing categories filled in."""
        profile = await self.get_entity(key)
        defaults = self.default_entity()
        for category, value in defaults.items():
            if self.category_kind(category) is CategoryKind.RECORD:
                stored = profile.get(category)
                if isinstance(stored, dict):
                    profile[category] = {**value, **stored}
                    continue
            profile.setdefault(category, value)
        return profile

    async def update_memory(
        self, key: str, category: str, data: Any, merge: bool = True,
    ) -> dict[str, Any]:
        return await self.update_entity(key, category, data, merge)

    async def add_to_memory_array(
        self, key: str, category: str, subcategory: str, item: Any, max_items: int = 20,
    ) -> dict[str, Any]:
        return await self.append_to_array(key, category, subcategory, item, max_items)

    async def clear_memory(self, key: str) -> bool:
        return await self.delete_entity(key)

    async def set_field(
        self, key: str, category: str, field: str, value: Any, merge: bool = False,
    ) -> dict[str, Any]:
        """Set ``profile[category][field]``, overlaying mappings when *merge* is set."""

        def apply(profile: dict[str, Any]) -> dict[str, Any]:
            container = profile.get(category)
            if not isinstance(container, dict):
                container = profile[category] = {}
            current = container.get(field)
            if merge and isinstance(current, dict) and isinstance(value, dict):
                container[field] = {**current, **value}
            else:
                container[field] = value
            self.touch(profile)
            return profile

        return await self.mutate(key, apply)

    async def delete_field(
        self, key: str, category: str, field: str, subkey: str | None = None,
    ) -> bool:
        """Drop ``profile[category][field]``, or one *subkey* inside it.

        Returns False when there was nothing to delete.
        """
        if key not in await self.keys():
            return False
        removed = False

        def apply(profile: dict[str, Any]) -> dict[str, Any]:
            nonlocal removed
            container = profile.get(category)
            if not isinstance(container, dict) or field not in container:
                return profile
            if subkey is None:
                del container[field]
                removed = True
            elif isinstance(container[field], dict) and subkey in container[field]:
                del container[field][subkey]
                removed = True
            if removed:
                self.touch(profile)
            return profile

        await self.mutate(key, apply)
        return removed

    # ── Convenience writers ─────────────────────────────────────────

    async def store_personal_info(self, key: str, info: dict[str, Any]) -> dict[str, Any]:
        return await self.update_entity(key, "personalInfo", info, merge=True)

    async def store_academic_info(self, key: str, info: dict[str, Any]) -> dict[str, Any]:
        return await self.update_entity(key, "academicInfo", info, merge=True)

    async def store_relationship(
        self, key: str, kind: str, name: str, details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Remember a person under ``relationships[kind]``, keyed by lower-cased name."""
        now = self.now_iso()

        def apply(profile: dict[str, Any]) -> dict[str, Any]:
            relationships = profile.setdefault("relationships", {})
            people = relationships.setdefault(kind, {})
            people[name.lower()] = {"name": name, **(details or {}), "lastMentioned": now}
            self.touch(profile)
            return profile

        return await self.mutate(key, apply)

    async def store_emotional_context(
        self, key: str, context: dict[str, Any],
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "currentMood": context.get("mood"),
            "stressLevel": context.get("stressLevel") or "normal",
            "lastEmotionalUpdate": self.now_iso(),
        }
        if context.get("traits"):
            data["personalityTraits"] = context["traits"]
        return await self.update_entity(key, "emotionalProfile", data, merge=True)

    async def store_life_event(self, key: str, event: Any) -> dict[str, Any]:
        return await self.append_to_array(
            key, "lifeEvents", "recentEvents", event, MAX_RECENT_EVENTS,
        )

    async def store_conversation_context(
        self, key: str, context: dict[str, Any],
    ) -> dict[str, Any]:
        """Fold a topic, an issue and/or a thing to remember into the context."""
        now = self.now_iso()

        def apply(profile: dict[str, Any]) -> dict[str, Any]:
            ctx = profile.get("conversationContext")
            if not isinstance(ctx, dict):
                ctx = profile["conversationContext"] = {}
            if context.get("topic"):
                topics = [{"topic": context["topic"], "timestamp": now}]
                ctx["lastTopics"] = (topics + ctx.get("lastTopics", []))[:MAX_LAST_TOPICS]
            if context.get("issue"):
                issue = {
                    "issue": context["issue"],
                    "status": context.get("status") or "ongoing",
                    "timestamp": now,
                }
                ctx["ongoingIssues"] = [issue, *ctx.get("ongoingIssues", [])]
            if context.get("remember"):
                item = {
                    "content": context["remember"],
                    "importance": context.get("importance") or "medium",
                    "timestamp": now,
                }
                things = [item, *ctx.get("thingsToRemember", [])]
                ctx["thingsToRemember"] = things[:MAX_THINGS_TO_REMEMBER]
            ctx["lastInteraction"] = now
            self.touch(profile)
            return profile

        return await self.mutate(key, apply)

    # ── Derived views ───────────────────────────────────────────────

    async def memory_summary(self, key: str) -> str:
        """Plain-text digest of a profile for use as prompt context."""
        memory = await self.get_profile(key)
        lines: list[str] = []

        personal = memory["personalInfo"]
        if personal.get("name") or personal.get("age") or personal.get("school"):
            lines.append("PERSONAL INFO:")
            for label, field in (("Name", "name"), ("Age", "age"),
                                 ("School", "school"), ("Grade", "grade")):
                if personal.get(field):
                    lines.append(f"- {label}: {personal[field]}")
            for label, field in (("Subjects", "subjects"), ("Hobbies", "hobbies")):
                if personal.get(field):
                    lines.append(f"- {label}: {', '.join(map(str, personal[field]))}")
            lines.append("")

        academic = memory["academicInfo"]
        if academic.get("stream") or academic.get("strongSubjects"):
            lines.append("ACADEMIC INFO:")
            if academic.get("stream"):
                lines.append(f"- Stream: {academic['stream']}")
            if academic.get("currentGrade"):
                lines.append(f"- Current Grade: {academic['currentGrade']}")
            for label, field in (("Strong Subjects", "strongSubjects"),
                                 ("Weak Subjects", "weakSubjects")):
                if academic.get(field):
                    lines.append(f"- {label}: {', '.join(map(str, academic[field]))}")
            lines.append("")

        people: dict[str, Any] = {}
        for group in memory["relationships"].values():
            if isinstance(group, dict):
                people.update(group)
        if people:
            lines.append("RELATIONSHIPS:")
            for person in people.values():
                lines.append(f"- {person.get('name')}: {person.get('relationship') or 'friend'}")
            lines.append("")

        emotional = memory["emotionalProfile"]
        stress = emotional.get("stressLevel", "normal")
        if emotional.get("currentMood") or stress != "normal":
            lines.append("EMOTIONAL STATE:")
            if emotional.get("currentMood"):
                lines.append(f"- Current Mood: {emotional['currentMood']}")
            if stress != "normal":
                lines.append(f"- Stress Level: {stress}")
            if emotional.get("personalityTraits"):
                lines.append(f"- Personality: {', '.join(map(str, emotional['personalityTraits']))}")
            lines.append("")

        events = memory["lifeEvents"].get("recentEvents") or []
        if events:
            lines.append("RECENT EVENTS:")
            for event in events[:5]:
                content = event.get("content") if isinstance(event, dict) else event
                lines.append(f"- {content}")
            lines.append("")

        ctx = memory["conversationContext"]
        if ctx.get("ongoingIssues"):
            lines.append("ONGOING ISSUES:")
            for issue in ctx["ongoingIssues"][:3]:
                lines.append(f"- {issue.get('issue')} ({issue.get('status')})")
            lines.append("")
        if ctx.get("thingsToRemember"):
            lines.append("IMPORTANT TO REMEMBER:")
            for item in ctx["thingsToRemember"][:5]:
                lines.append(f"- {item.get('content')}")
            lines.append("")

        if not lines:
            return SUMMARY_HEADER
        return SUMMARY_HEADER + "\n".join(lines) + "\n"

    async def stats(self) -> dict[str, int]:
        """User count and the number of filled-in memory fields."""
        document = await self.read_document()
        total = 0
        for profile in document.values():
            if not isinstance(profile, dict):
                continue
            for value in profile.values():
                if isinstance(value, (dict, list)):
                    total += len(value)
        users = len(document)
        return {
            "totalUsers": users,
            "totalMemories": total,
            "averageMemoriesPerUser": round(total / users) if users else 0,
        }
