"""
Conversation state for agent calls.

The ContextManager builds and reshapes AgentContext values (never in place),
scores query complexity and owns the short-term agent memory cache. The
memory cache is the only mutable structure here and is guarded by an
asyncio.Lock; an optional store makes it durable across restarts.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .cost import estimate_tokens
from .models import (
    AgentContext,
    Dialect,
    MemoryEntry,
    Message,
    Role,
    StudentProfile,
    utcnow,
)

logger = logging.getLogger("tutor-gateway")

USER_LABEL = "الطالب"
AGENT_LABEL = "الوكيل"
SYSTEM_LABEL = "النظام"

DIALECT_NAMES: Dict[Dialect, str] = {
    Dialect.MSA: "الفصحى",
    Dialect.EGYPTIAN: "المصري",
    Dialect.GULF: "الخليجي",
    Dialect.LEVANTINE: "الشامي",
    Dialect.MAGHREBI: "المغربي",
}

# Ordered: the first dialect with a matching marker wins.
DIALECT_MARKERS: Tuple[Tuple[Dialect, Tuple[str, ...]], ...] = (
    (Dialect.EGYPTIAN, ("ازيك", "عامل ايه", "ازاي", "كده")),
    (Dialect.GULF, ("شلونك", "وش", "ابغى")),
    (Dialect.LEVANTINE, ("كيفك", "شو", "هلق")),
    (Dialect.MAGHREBI, ("واش", "بزاف", "كيداير")),
)

TECHNICAL_TERMS: Tuple[str, ...] = (
    "معادلة",
    "نظرية",
    "برهان",
    "تفاضل",
    "تكامل",
    "خوارزمية",
    "برمجة",
    "فيزياء",
    "كيمياء",
)

DEFAULT_MAX_MESSAGES = 20
DEFAULT_MAX_CONTEXT_TOKENS = 30000
MAX_MEMORY_ENTRIES = 100


def _marker_pattern(marker: str) -> "re.Pattern[str]":
    return re.compile(r"(?<!\S)" + re.escape(marker) + r"(?!\S)")


_DIALECT_PATTERNS = tuple(
    (dialect, tuple(_marker_pattern(m) for m in markers)) for dialect, markers in DIALECT_MARKERS
)


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class MemoryStore(Protocol):
    """Durable backing for agent memory (see storage.session_store)."""

    def save_memory_entry(self, entry: MemoryEntry) -> None: ...

    def load_memory_entries(self, user_id: str, agent_id: str) -> List[MemoryEntry]: ...

    def delete_memory_entries(self, user_id: str, agent_id: str) -> None: ...


class ContextManager:
    def __init__(self, *, store: Optional[MemoryStore] = None, max_memory_entries: int = MAX_MEMORY_ENTRIES) -> None:
        self._store = store
        self._max_memory_entries = max_memory_entries
        self._memory: Dict[Tuple[str, str], List[MemoryEntry]] = {}
        self._loaded: set = set()
        self._lock = asyncio.Lock()

    # -- context construction -------------------------------------------------

    def build_context(
        self,
        user_id: str,
        input: str,
        *,
        profile: Optional[StudentProfile] = None,
        history: Optional[Sequence[Message]] = None,
        session_id: Optional[str] = None,
        dialect: Optional[Dialect] = None,
        mastery_levels: Optional[Dict[str, float]] = None,
        current_topic: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AgentContext:
        """
        Build a fresh context for one request.

        The new user message is appended after the supplied history. The
        dialect comes from the request, then the profile, then detection
        over the latest turns; `metadata["dialect_source"]` records which.
        """
        conversation = tuple(history or ()) + (Message(role=Role.USER, content=input),)

        if dialect is not None:
            resolved, source = dialect, "request"
        elif profile is not None and profile.preferred_dialect is not None:
            resolved, source = profile.preferred_dialect, "profile"
        else:
            resolved = self.detect_dialect(conversation)
            source = "detected" if resolved is not None else "none"

        meta = dict(metadata or {})
        meta["dialect_source"] = source

        return AgentContext(
            user_id=user_id,
            session_id=session_id or new_session_id(),
            student_profile=profile,
            preferred_dialect=resolved,
            conversation_history=conversation,
            current_topic=current_topic,
            mastery_levels=dict(mastery_levels or {}),
            metadata=meta,
        )

    def update_context(
        self,
        context: AgentContext,
        content: str,
        agent_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AgentContext:
        """Return a copy of `context` with an agent message appended."""
        message = Message(
            role=Role.AGENT,
            content=content,
            producing_agent_id=agent_id,
            metadata=dict(metadata or {}),
        )
        return context.with_message(message)

    # -- history shaping ------------------------------------------------------

    @staticmethod
    def trim_history(history: Sequence[Message], max_messages: int = DEFAULT_MAX_MESSAGES) -> Tuple[Message, ...]:
        """
        Keep every system message plus the most recent other messages.

        The result holds at most `max_messages` entries unless there are
        more system messages than that, and keeps chronological order.
        """
        history = tuple(history)
        if len(history) <= max_messages:
            return history

        n_system = sum(1 for m in history if m.role == Role.SYSTEM)
        budget = max(0, max_messages - n_system)

        keep = set()
        for index in range(len(history) - 1, -1, -1):
            if budget <= 0:
                break
            if history[index].role != Role.SYSTEM:
                keep.add(index)
                budget -= 1

        return tuple(m for i, m in enumerate(history) if m.role == Role.SYSTEM or i in keep)

    @staticmethod
    def role_label(message: Message) -> str:
        if message.role == Role.USER:
            return USER_LABEL
        if message.role == Role.AGENT:
            return message.producing_agent_id or AGENT_LABEL
        return SYSTEM_LABEL

    def format_history(self, history: Iterable[Message], *, include_timestamps: bool = False) -> str:
        lines = []
        for message in history:
            label = self.role_label(message)
            if include_timestamps:
                label = f"[{message.timestamp.strftime('%H:%M')}] {label}"
            lines.append(f"{label}: {message.content}")
        return "\n".join(lines)

    # -- heuristics -----------------------------------------------------------

    @staticmethod
    def detect_dialect(history: Sequence[Message]) -> Optional[Dialect]:
        recent = " ".join(m.content for m in tuple(history)[-3:])
        for dialect, patterns in _DIALECT_PATTERNS:
            if any(p.search(recent) for p in patterns):
                return dialect
        return None

    @staticmethod
    def calculate_complexity(input: str, context: Optional[AgentContext] = None) -> float:
        score = 0.5

        words = len(input.split())
        if words > 100:
            score += 0.2
        elif words > 50:
            score += 0.1

        if any(term in input for term in TECHNICAL_TERMS):
            score += 0.15

        if context is not None and len(context.conversation_history) > 10:
            score += 0.1

        if "```" in input or "$" in input:
            score += 0.1

        return min(1.0, max(0.0, score))

    @staticmethod
    def extract_topics(history: Sequence[Message], limit: int = 10) -> List[str]:
        topics: List[str] = []
        for message in tuple(history)[-5:]:
            for word in message.content.split():
                if len(word) > 4 and word not in topics:
                    topics.append(word)
        return topics[:limit]

    def build_prompt_prefix(self, context: AgentContext) -> str:
        parts = []
        profile = context.student_profile
        if profile is not None and profile.display_name:
            parts.append(f"الطالب: {profile.display_name}")
        if context.preferred_dialect is not None:
            parts.append(f"اللهجة المفضلة: {DIALECT_NAMES[context.preferred_dialect]}")
        if context.current_topic:
            parts.append(f"الموضوع الحالي: {context.current_topic}")
        if context.mastery_levels:
            levels = list(context.mastery_levels.values())
            average = sum(levels) / len(levels)
            parts.append(f"مستوى الإتقان المتوسط: {average * 100:.0f}%")
        return "\n".join(parts)

    @staticmethod
    def get_mastery_level(context: AgentContext, kc_id: str) -> Optional[float]:
        return context.mastery_levels.get(kc_id)

    # -- size management ------------------------------------------------------

    @staticmethod
    def estimate_context_tokens(context: AgentContext) -> float:
        return len(" ".join(m.content for m in context.conversation_history)) / 4

    def is_context_too_large(self, context: AgentContext, max_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS) -> bool:
        return self.estimate_context_tokens(context) > max_tokens

    def summarize_history(self, history: Sequence[Message]) -> Message:
        history = tuple(history)
        topics = "، ".join(self.extract_topics(history)[:3])
        content = f"تم إجراء {len(history)} رسالة سابقة. المواضيع المطروحة: {topics}."
        timestamp = history[-1].timestamp if history else utcnow()
        return Message(role=Role.SYSTEM, content=content, timestamp=timestamp, metadata={"summary": True})

    def fit_context(
        self,
        context: AgentContext,
        max_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        *,
        keep_recent: int = 10,
    ) -> AgentContext:
        """
        Shrink an oversized context: older turns collapse into one summary
        system message placed before the most recent `keep_recent` turns.
        """
        if not self.is_context_too_large(context, max_tokens):
            return context
        history = context.conversation_history
        if len(history) <= keep_recent:
            return context
        older, recent = history[:-keep_recent], history[-keep_recent:]
        summary = self.summarize_history(older)
        logger.info(
            "context_summarized user=%s dropped=%s kept=%s",
            context.user_id,
            len(older),
            len(recent),
        )
        return context.model_copy(update={"conversation_history": (summary,) + tuple(recent)})

    # -- agent memory ---------------------------------------------------------

    async def store_memory(self, entry: MemoryEntry) -> None:
        key = (entry.user_id, entry.agent_id)
        async with self._lock:
            now = utcnow()
            entries = [e for e in self._memory.get(key, []) if not e.is_expired(now)]
            entries.append(entry)
            self._memory[key] = entries[-self._max_memory_entries :]
        if self._store is not None:
            try:
                self._store.save_memory_entry(entry)
            except Exception:
                logger.exception(
                    "memory_persist_failed user=%s agent=%s key=%s",
                    entry.user_id,
                    entry.agent_id,
                    entry.key,
                )

    async def get_memory(self, user_id: str, agent_id: str, key: Optional[str] = None) -> List[MemoryEntry]:
        cache_key = (user_id, agent_id)
        async with self._lock:
            if cache_key not in self._loaded and self._store is not None:
                self._loaded.add(cache_key)
                try:
                    persisted = self._store.load_memory_entries(user_id, agent_id)
                except Exception:
                    logger.exception("memory_load_failed user=%s agent=%s", user_id, agent_id)
                    persisted = []
                if persisted:
                    # The store already holds every entry written through store_memory.
                    self._memory[cache_key] = list(persisted)[-self._max_memory_entries :]
            entries = list(self._memory.get(cache_key, []))
        now = utcnow()
        return [e for e in entries if not e.is_expired(now) and (key is None or e.key == key)]

    async def clear_memory(self, user_id: str, agent_id: str) -> None:
        async with self._lock:
            self._memory.pop((user_id, agent_id), None)
            self._loaded.add((user_id, agent_id))
        if self._store is not None:
            try:
                self._store.delete_memory_entries(user_id, agent_id)
            except Exception:
                logger.exception("memory_clear_failed user=%s agent=%s", user_id, agent_id)
