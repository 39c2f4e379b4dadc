"""Request bodies of the HTTP API."""

from typing import List, Literal, Optional

from pydantic import Field, field_validator

from ..domain.models import CamelModel


class ConversationCreate(CamelModel):
    """Defines the structure for conversation creation requests"""

    model: Optional[str] = None
    preprompt: Optional[str] = None
    assistant_id: Optional[str] = None
    assistant_ids: Optional[List[str]] = None


class ConversationPatch(CamelModel):
    title: Optional[str] = None
    model: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _trim_title(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not 1 <= len(value) <= 100:
            raise ValueError("title must be between 1 and 100 characters")
        return value


class AssistantCreate(CamelModel):
    name: str = Field(min_length=1)
    preprompt: str = ""


class VoteRequest(CamelModel):
    score: Literal[-1, 0, 1]
