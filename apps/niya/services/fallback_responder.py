"""Rule-based replies used when the AI service is down and fallback mode is on.

Replies are picked per persona by keyword category. The responder remembers
its last few replies per conversation and avoids repeating them.
"""

from __future__ import annotations

import logging
import random
import re
from collections import OrderedDict, deque
from typing import Callable

logger = logging.getLogger(__name__)

RECENT_REPLY_MEMORY = 3
TRACKED_CONVERSATIONS = 1024

_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "greeting": ("hi", "hello", "hey", "good morning", "good evening", "namaste"),
    "sadness": ("sad", "lonely", "down", "depressed", "cry", "hurt", "upset"),
    "stress": ("stress", "anxious", "anxiety", "overwhelmed", "worried", "panic", "tired"),
    "food": ("eat", "food", "diet", "meal", "hungry", "weight", "calorie", "protein"),
    "work": ("job", "work", "career", "boss", "interview", "resume", "salary", "promotion"),
}

_REPLIES: dict[str, dict[str, list[str]]] = {
    "therapist": {
        "greeting": [
            "Hi, I'm glad you're here. How are you feeling today?",
            "Hello. What's on your mind right now?",
        ],
        "sadness": [
            "That sounds really heavy. Do you want to tell me more about what happened?",
            "I'm sorry you're feeling this way. You don't have to carry it alone.",
            "It's okay to feel sad. What has been the hardest part?",
        ],
        "stress": [
            "Let's slow down for a moment. Can you take one deep breath with me?",
            "It sounds like a lot is piling up. What feels most urgent?",
        ],
        "default": [
            "I'm listening. Tell me a little more.",
            "How does that make you feel?",
            "What would feel helpful for you right now?",
            "Thank you for sharing that with me.",
        ],
    },
    "dietician": {
        "greeting": [
            "Hello! Ready to talk about food and how you're fuelling yourself?",
            "Hi there! What did you eat today?",
        ],
        "food": [
            "Try building your plate with half vegetables, a quarter protein and a quarter whole grains.",
            "Regular meals with enough protein help keep energy steady through the day.",
            "Staying hydrated matters too. How much water are you drinking?",
        ],
        "stress": [
            "Stress often shows up in how we eat. Have your meals been regular lately?",
        ],
        "default": [
            "Tell me about a typical day of meals for you.",
            "Small, consistent changes tend to stick better than big ones.",
            "What goal would you like to work towards with your diet?",
        ],
    },
    "career": {
        "greeting": [
            "Hi! What's happening in your career at the moment?",
            "Hello! Are you working towards a new role or growing in your current one?",
        ],
        "work": [
            "Let's break that down. What outcome would you like in the next three months?",
            "Have you written down the skills you want to be known for?",
            "A short, specific resume usually beats a long, general one.",
        ],
        "stress": [
            "Work pressure is real. Which part of it feels least in your control?",
        ],
        "default": [
            "What do you enjoy most about the work you do?",
            "Where would you like to be professionally a year from now?",
            "Tell me more about your current role.",
        ],
    },
    "priya": {
        "greeting": [
            "Hey! So good to hear from you. How's your day going?",
            "Hi! I was just thinking about you. What's new?",
        ],
        "sadness": [
            "Aww, come here. Want to talk about it?",
            "I'm here for you, always. What happened?",
        ],
        "stress": [
            "That sounds exhausting. Have you had a moment to yourself today?",
        ],
        "default": [
            "Tell me everything!",
            "Haha, really? Then what happened?",
            "I love hearing about your day.",
        ],
    },
}

_GENERIC = [
    "I'm here and listening. Could you tell me a bit more?",
    "Thanks for sharing. What would you like to talk about next?",
    "I'm having a little trouble right now, but I'm still here with you.",
]


def categorize(text: str) -> str:
    words = set(re.findall(r"[a-z']+", (text or "").lower()))
    lowered = (text or "").lower()
    for category, keywords in _CATEGORY_KEYWORDS.items():
        for kw in keywords:
            if (" " in kw and kw in lowered) or kw in words:
                return category
    return "default"


class RuleBasedResponder:
    def __init__(
        self,
        *,
        choice: Callable[[list[str]], str] = random.choice,
        max_conversations: int = TRACKED_CONVERSATIONS,
    ) -> None:
        self._choice = choice
        self._max_conversations = max(1, max_conversations)
        # Least recently used conversation first.
        self._recent: OrderedDict[str, deque[str]] = OrderedDict()

    def _history(self, conversation_id: str) -> deque[str]:
        recent = self._recent.get(conversation_id)
        if recent is None:
            recent = deque(maxlen=RECENT_REPLY_MEMORY)
            self._recent[conversation_id] = recent
            while len(self._recent) > self._max_conversations:
                self._recent.popitem(last=False)
        else:
            self._recent.move_to_end(conversation_id)
        return recent

    def tracked_conversations(self) -> int:
        return len(self._recent)

    def candidates(self, text: str, persona: str | None) -> list[str]:
        table = _REPLIES.get(persona or "", {})
        category = categorize(text)
        return list(table.get(category) or table.get("default") or _GENERIC)

    def reply(
        self, text: str, *, persona: str | None = None, conversation_id: str | None = None
    ) -> str:
        options = self.candidates(text, persona)
        recent = self._history(conversation_id or "")
        fresh = [o for o in options if o not in recent]
        if not fresh:
            # Every candidate was used recently; fall back to the broader persona pool.
            pool = [o for v in _REPLIES.get(persona or "", {}).values() for o in v] + _GENERIC
            fresh = [o for o in pool if o not in recent] or options
        picked = self._choice(fresh)
        recent.append(picked)
        logger.debug("Fallback reply for persona=%s conversation=%s", persona, conversation_id)
        return picked


__all__ = ["RECENT_REPLY_MEMORY", "TRACKED_CONVERSATIONS", "RuleBasedResponder", "categorize"]
