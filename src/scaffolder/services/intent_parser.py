from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from ..domain.models import ParsedIntent
from ..errors import ModelFailureError
from .model_client import ModelClient

logger = logging.getLogger("scaffolder.intent")

VALID_CATEGORIES = ("expense", "habit", "project", "health", "learning", "inventory", "time", "custom")

# Default fields and views per tracker category
CATEGORY_TEMPLATES: Dict[str, Dict[str, List[str]]] = {
    "expense": {"fields": ["amount", "category", "description", "date", "paymentMethod"], "views": ["table", "chart"]},
    "habit": {"fields": ["habitName", "completed", "date", "notes", "streak"], "views": ["table", "chart"]},
    "project": {"fields": ["taskName", "status", "priority", "dueDate", "assignee", "notes"], "views": ["table", "cards"]},
    "health": {"fields": ["metric", "value", "unit", "date", "notes"], "views": ["table", "chart"]},
    "learning": {"fields": ["topic", "timeSpent", "date", "progress", "notes"], "views": ["table", "chart"]},
    "inventory": {"fields": ["itemName", "quantity", "category", "location", "lastUpdated"], "views": ["table", "cards"]},
    "time": {"fields": ["activity", "startTime", "endTime", "duration", "category", "notes"], "views": ["table", "chart"]},
    "custom": {"fields": ["name", "value", "date", "notes"], "views": ["table"]},
}

PARSE_SYSTEM_PROMPT = """You are an intent parser for a personal tracker app builder. Analyze the user's description and extract:
1. category: expense, habit, project, health, learning, inventory, time, or custom
2. entities: the main things being tracked
3. actions: what the user wants to do (track, monitor, analyze, visualize)
4. relationships: how entities relate (e.g. "expenses by category")
5. suggestedName: a short name for the app
Respond with a JSON object only."""

PARSE_SCHEMA = """{
  "category": "expense|habit|project|health|learning|inventory|time|custom",
  "entities": ["string"],
  "actions": ["string"],
  "relationships": ["string"],
  "suggestedName": "string",
  "confidence": 0.0
}"""

# Keyword heuristics for the model-free path; first match wins.
_CATEGORY_KEYWORDS: List[tuple[str, tuple[str, ...]]] = [
    ("expense", ("expense", "spending", "spend", "budget", "money", "purchase", "bill", "cost")),
    ("habit", ("habit", "routine", "streak", "daily goal", "meditat")),
    ("project", ("task", "todo", "to-do", "project", "order", "ticket", "kanban", "sprint", "issue", "bug")),
    ("health", ("health", "weight", "sleep", "workout", "fitness", "calorie", "blood", "mood", "steps")),
    ("learning", ("learn", "study", "course", "lesson", "reading list", "skill")),
    ("inventory", ("inventory", "stock", "item", "collection", "pantry", "warehouse", "supplies")),
    ("time", ("time track", "timesheet", "hours", "timer", "time spent", "billable")),
]

_STOPWORDS = {
    "a", "an", "the", "my", "our", "i", "want", "to", "track", "tracker", "app", "build", "make",
    "for", "of", "and", "with", "me", "help", "manage", "keep", "log", "create", "simple", "need",
}

_ACTION_WORDS = ("track", "monitor", "analyze", "visualize", "log", "manage", "plan", "record")


def validate_category(category: Any) -> str:
    value = str(category or "").strip().lower()
    return value if value in VALID_CATEGORIES else "custom"


def _title_case(words: List[str]) -> str:
    return " ".join(w[:1].upper() + w[1:] for w in words if w)


def keyword_intent(prompt: str) -> ParsedIntent:
    """Deterministic intent used when the model is unavailable."""
    text = (prompt or "").lower()
    category = "custom"
    for cat, keywords in _CATEGORY_KEYWORDS:
        if any(k in text for k in keywords):
            category = cat
            break
    words = re.findall(r"[a-z][a-z'-]*", text)
    entities = [w for w in words if w not in _STOPWORDS and len(w) > 2][:4]
    actions = [a for a in _ACTION_WORDS if a in text] or ["track"]
    noun_phrase = entities[-2:] if entities else []
    name = f"{_title_case(noun_phrase)} Tracker" if noun_phrase else "My Tracker"
    return ParsedIntent(
        category=category,
        entities=entities,
        actions=actions,
        relationships=[],
        suggested_name=name,
        confidence=0.4 if category != "custom" else 0.2,
        original_prompt=prompt,
    )


def intent_from_payload(payload: Any, prompt: str) -> ParsedIntent:
    """Normalize the model's loosely shaped answer into a ``ParsedIntent``."""
    data: Dict[str, Any] = payload if isinstance(payload, dict) else {}

    def _str_list(key: str) -> List[str]:
        raw = data.get(key)
        if isinstance(raw, str):
            return [raw]
        return [str(x) for x in raw] if isinstance(raw, list) else []

    confidence = data.get("confidence")
    name = data.get("suggestedName") or data.get("suggested_name") or "My Tracker"
    return ParsedIntent(
        category=validate_category(data.get("category")),
        entities=_str_list("entities"),
        actions=_str_list("actions"),
        relationships=_str_list("relationships"),
        suggested_name=str(name),
        confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.5,
        original_prompt=prompt,
    )


async def parse_intent(prompt: str, client: Optional[ModelClient] = None) -> ParsedIntent:
    client = client or ModelClient()
    messages = [
        {"role": "system", "content": PARSE_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
    try:
        payload = await client.acomplete_json(messages, schema=PARSE_SCHEMA, temperature=0.3)
    except ModelFailureError as exc:
        logger.info("intent_keyword_fallback", extra={"err": exc.message})
        return keyword_intent(prompt)
    intent = intent_from_payload(payload, prompt)
    logger.info("intent_parsed", extra={"category": intent.category, "confidence": intent.confidence})
    return intent
