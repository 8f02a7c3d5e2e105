"""
Dormant Concept Detector - themes the owner used to care about but has
gone quiet on.

A theme is dormant when it was mentioned at least `dormant_min_frequency`
times but not in the last `dormant_after_days` days. Detection is read-only
apart from caching each theme's category once the oracle has classified it.
"""

import asyncio
import dataclasses
import sqlite3
import time
from typing import Callable, Optional

from engine_config import EngineConfig
from memory_errors import MemoryEngineError
from memory_models import DormantConcept, ThemeRecord
from memory_store import MemoryStore
from oracle_schemas import RelevanceCheck, parse_dormant_category
from oracles import ChatOracle


CATEGORIZE_PROMPT = """Categorize this concept from a person's life into exactly one of: value, interest, skill, dream, insight, approach

Concept: {concept}

Respond with JSON: {{"category": "<one word>"}}"""

RELEVANCE_PROMPT = """This person once cared about this concept but hasn't mentioned it in months: "{concept}"
They used to talk about it in these contexts:
{contexts}

Current situation: {context}
Current message: {message}

Could this dormant concept be relevant or useful now?

Respond with JSON:
{{"isRelevant": <true|false>, "relevanceScore": <0 to 1>, "connection": "<how it relates>", "reactivationPrompt": "<how to bring it up naturally>"}}"""

SECONDS_PER_DAY = 86400.0


def humanize_elapsed(days: float) -> str:
    """'3 months ago' style phrase for a number of days."""
    days = max(0.0, days)
    if days < 1:
        return "less than a day ago"
    if days < 30:
        n = int(round(days))
        return f"{n} day{'s' if n != 1 else ''} ago"
    if days < 365:
        n = max(1, int(round(days / 30)))
        return f"{n} month{'s' if n != 1 else ''} ago"
    n = int(days // 365)
    return f"about {n} year{'s' if n != 1 else ''} ago"


def format_reactivation(concept: DormantConcept) -> str:
    """A gentle reminder paragraph the conversation system can weave into a reply."""
    where = f" when you were {concept.contexts[0]}" if concept.contexts else ""
    lines = [
        "This reminds me of something you haven't talked about in a while...",
        f"{concept.elapsed[:1].upper()}{concept.elapsed[1:]}, you were really interested in {concept.theme}.",
        f"You mentioned it {concept.mention_count} times{where}.",
    ]
    if concept.connection:
        lines.append(concept.connection)
    lines.append(
        "I wonder if that perspective might be useful here? Has that interest faded, "
        "or could it be part of the solution you're looking for?"
    )
    return "\n".join(lines)


class DormantConceptDetector:

    def __init__(
        self,
        store: MemoryStore,
        chat: ChatOracle,
        config: Optional[EngineConfig] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.chat = chat
        self.config = config or EngineConfig()
        self.on_status = on_status

    def _status(self, msg: str):
        print(f"[Dormant] {msg}")
        if self.on_status:
            self.on_status(msg)

    # ── Identification ────────────────────────────────────────────────────────

    async def _categorize(self, owner_id: str, theme: ThemeRecord) -> str:
        if theme.category:
            return theme.category
        try:
            raw = await self.chat.complete_json(
                CATEGORIZE_PROMPT.format(concept=theme.theme), max_tokens=20, temperature=0.3
            )
        except MemoryEngineError as e:
            self._status(f"Categorising '{theme.theme}' failed, using 'interest': {e}")
            return "interest"
        category = parse_dormant_category(raw, default="")
        if not category:
            return "interest"
        try:
            self.store.set_theme_category(owner_id, theme.theme, category)
        except sqlite3.Error as e:
            self._status(f"Could not cache category for '{theme.theme}': {e}")
        return category

    def _emotional_context(self, owner_id: str, theme: str) -> tuple[float, list[str]]:
        points = self.store.theme_emotions(owner_id, theme)
        valence = (
            sum(p.valence for p in points) / len(points)
            if points else self.config.dormant_default_valence
        )
        contexts: list[str] = []
        for p in points:
            snippet = p.context_snippet.strip()
            if snippet and snippet not in contexts:
                contexts.append(snippet)
            if len(contexts) >= self.config.dormant_context_limit:
                break
        return valence, contexts

    async def identify(self, owner_id: str, now: Optional[float] = None) -> list[DormantConcept]:
        """All dormant themes for an owner, sorted by theme name."""
        now = time.time() if now is None else now
        try:
            themes = self.store.get_themes(owner_id)
        except (MemoryEngineError, sqlite3.Error) as e:
            self._status(f"Store unavailable for {owner_id}: {e}")
            return []

        cutoff_days = self.config.dormant_after_days
        candidates = [
            t for t in themes
            if t.frequency >= self.config.dormant_min_frequency
            and (now - t.last_mentioned) / SECONDS_PER_DAY > cutoff_days
        ]
        if not candidates:
            return []

        categories = await asyncio.gather(*(self._categorize(owner_id, t) for t in candidates))

        concepts = []
        for theme, category in zip(candidates, categories):
            try:
                valence, contexts = self._emotional_context(owner_id, theme.theme)
            except sqlite3.Error as e:
                self._status(f"Emotional context for '{theme.theme}' unavailable: {e}")
                valence, contexts = self.config.dormant_default_valence, []
            days = (now - theme.last_mentioned) / SECONDS_PER_DAY
            concepts.append(DormantConcept(
                theme=theme.theme,
                category=category,
                last_mentioned=theme.last_mentioned,
                mention_count=theme.frequency,
                emotional_valence=valence,
                days_dormant=days,
                elapsed=humanize_elapsed(days),
                contexts=contexts,
            ))

        concepts.sort(key=lambda c: c.theme)
        self._status(f"{owner_id}: {len(concepts)} dormant concept(s)")
        return concepts

    # ── Relevance ─────────────────────────────────────────────────────────────

    async def _check_one(self, concept: DormantConcept, message: str, context: str) -> Optional[DormantConcept]:
        prompt = RELEVANCE_PROMPT.format(
            concept=concept.theme,
            contexts=", ".join(concept.contexts) or "(no recorded context)",
            context=context or "(not given)",
            message=message or "(not given)",
        )
        try:
            check = RelevanceCheck.from_oracle(
                await self.chat.complete_json(prompt, max_tokens=300, temperature=0.3)
            )
        except MemoryEngineError as e:
            self._status(f"Relevance check for '{concept.theme}' failed: {e}")
            return None
        return dataclasses.replace(
            concept,
            relevance=check.relevance_score,
            connection=check.connection or None,
            reactivation_prompt=check.reactivation_prompt or None,
        )

    async def check_relevance(
        self,
        concepts: list[DormantConcept],
        message: str,
        context: str = "",
    ) -> list[DormantConcept]:
        """Concepts the oracle scores above the relevance threshold for the present message."""
        if not concepts:
            return []
        checked = await asyncio.gather(*(self._check_one(c, message, context) for c in concepts))
        threshold = self.config.dormant_relevance_threshold
        return [c for c in checked if c is not None and c.relevance > threshold]

    async def dormant_concepts(
        self,
        owner_id: str,
        message: Optional[str] = None,
        context: Optional[str] = None,
        now: Optional[float] = None,
    ) -> list[DormantConcept]:
        concepts = await self.identify(owner_id, now=now)
        if message or context:
            concepts = await self.check_relevance(concepts, message or "", context or "")
        return concepts
