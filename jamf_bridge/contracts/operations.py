from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

JsonObject = Dict[str, Any]

ResourceType = Literal[
    "script",
    "policy",
    "computer_group",
    "package",
    "computer",
    "mobile_device",
    "mobile_device_group",
    "computer_configuration_profile",
    "mobile_device_configuration_profile",
    "advanced_computer_search",
]
Verb = Literal["create", "read", "update", "delete"]

DESTRUCTIVE_VERBS = frozenset({"delete"})
WRITE_VERBS = frozenset({"create", "update", "delete"})


@dataclass(frozen=True)
class LogicalOperation:
    """
    One family-independent operation in canonical field names.
    """

    resource_type: str
    verb: str
    identifier: Optional[str] = None
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_write(self) -> bool:
        return self.verb in WRITE_VERBS


class OperationRequest(BaseModel):
    """
    Input envelope accepted from the orchestration layer.
    """

    model_config = ConfigDict(extra="forbid")

    resource_type: ResourceType
    verb: Verb
    identifier: Optional[str] = None
    payload: Optional[JsonObject] = None
    confirm: bool = False

    @field_validator("identifier", mode="before")
    @classmethod
    def _identifier_to_str(cls, v: Any) -> Any:
        if v is None:
            return None
        if isinstance(v, bool):
            raise ValueError("identifier must be a string or integer")
        s = str(v).strip()
        return s or None

    @model_validator(mode="after")
    def _check_shape(self) -> "OperationRequest":
        if self.verb in ("read", "update", "delete") and not self.identifier:
            raise ValueError(f"identifier is required for {self.verb}")
        if self.verb in ("create", "update") and not self.payload:
            raise ValueError(f"payload is required for {self.verb}")
        return self

    @property
    def is_destructive(self) -> bool:
        return self.verb in DESTRUCTIVE_VERBS

    def to_logical(self) -> LogicalOperation:
        return LogicalOperation(
            resource_type=self.resource_type,
            verb=self.verb,
            identifier=self.identifier,
            payload=dict(self.payload or {}),
        )


class NormalizedResult(BaseModel):
    resource_type: str
    id: Optional[str] = None
    served_by: Literal["modern", "legacy"]
    fields: JsonObject = Field(default_factory=dict)
    verification: Optional[JsonObject] = None


class ErrorInfo(BaseModel):
    message: str
    code: str
    suggestions: List[str] = Field(default_factory=list)
    status_code: Optional[int] = None
    details: Optional[JsonObject] = None


class OperationResponse(BaseModel):
    success: bool
    data: Optional[NormalizedResult] = None
    error: Optional[ErrorInfo] = None
