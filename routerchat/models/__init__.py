"""Data models for routerchat."""

from routerchat.models.chat import ChatMessage, Role
from routerchat.models.directory import Model, ModelCache, Pricing

__all__ = [
    "ChatMessage",
    "Model",
    "ModelCache",
    "Pricing",
    "Role",
]
