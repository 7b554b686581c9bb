"""
Model directory data models.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _to_rate(value: Any) -> float:
    """Gateway rates arrive as decimal strings ("0.000002"); missing means free."""
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class Pricing(BaseModel):
    """Per-token prices for prompt and completion."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    prompt_rate: float = Field(default=0.0, alias="prompt")
    completion_rate: float = Field(default=0.0, alias="completion")

    @field_validator("prompt_rate", "completion_rate", mode="before")
    @classmethod
    def _coerce_rate(cls, value: Any) -> float:
        return _to_rate(value)


class Model(BaseModel):
    """A backing model reachable through the gateway."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    description: str = ""
    context_length: int = 0
    pricing: Pricing = Field(default_factory=Pricing)
    available: bool = True

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("name"):
                data["name"] = data.get("id", "")
            if data.get("context_length") is None:
                data["context_length"] = 0
            if data.get("pricing") is None:
                data.pop("pricing", None)
            if data.get("description") is None:
                data["description"] = ""
        return data

    def to_wire(self) -> dict[str, Any]:
        """Serialize in the gateway's field names (used by the UI bridge and the cache)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "context_length": self.context_length,
            "pricing": {
                "prompt": self.pricing.prompt_rate,
                "completion": self.pricing.completion_rate,
            },
            "available": self.available,
        }


class ModelCache(BaseModel):
    """Snapshot of the directory. Replaced as a whole, never mutated in place."""

    model_config = ConfigDict(frozen=True)

    models: list[Model] = Field(default_factory=list)
    fetched_at: float

    def is_valid(self, now: float, ttl: float) -> bool:
        return now - self.fetched_at < ttl

    def find(self, model_id: str) -> Model | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def to_wire(self) -> dict[str, Any]:
        return {
            "models": [m.to_wire() for m in self.models],
            "fetched_at": self.fetched_at,
        }
