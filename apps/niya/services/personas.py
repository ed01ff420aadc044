"""Persona registry: the fixed set of agent ids and their system prompts."""

from __future__ import annotations

from enum import Enum

from niya.core.exceptions import ValidationFailedError
from niya.prompts import load_prompt


class Persona(str, Enum):
    therapist = "therapist"
    dietician = "dietician"
    career = "career"
    priya = "priya"


VALID_AGENT_IDS: frozenset[str] = frozenset(p.value for p in Persona)


def resolve_persona(agent_id: str | None) -> Persona:
    """Map a client agent id to a persona or raise a validation error."""

    try:
        return Persona((agent_id or "").strip())
    except ValueError as exc:
        raise ValidationFailedError("Invalid agent ID", details={"agentId": agent_id}) from exc


def system_prompt_for(persona: Persona) -> str:
    return load_prompt("personas", f"{persona.value}.md")


__all__ = ["Persona", "VALID_AGENT_IDS", "resolve_persona", "system_prompt_for"]
