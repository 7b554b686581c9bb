"""
Chat message models.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    """Author of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatMessage(BaseModel):
    """A single message in a conversation. Immutable once constructed."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: Role
    content: str

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=Role.SYSTEM, content=content)

    def to_wire(self) -> dict[str, str]:
        """Serialize for the chat completions request body."""
        return {"role": Role(self.role).value, "content": self.content}
