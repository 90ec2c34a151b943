"""Pydantic schemas for capability provider responses.

Every LLM-backed provider must answer with a JSON object matching
``CallResponse``. Invalid responses raise SchemaValidationError.
"""

from __future__ import annotations
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import SchemaValidationError


class CallResponse(BaseModel):
    """Schema for a single capability call result."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ok: bool = Field(default=True, description="Whether the call succeeded")
    value: Any = Field(default=None, description="The call result")
    error: Optional[str] = Field(default=None, description="Failure reason when ok is false")
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Self-reported confidence")

    @field_validator("ok", mode="before")
    @classmethod
    def coerce_to_bool(cls, v: Any) -> bool:
        """Coerce various truthy values to bool."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "yes", "1", "ok", "success")
        return bool(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_to_float(cls, v: Any) -> Optional[float]:
        """Attempt to coerce string numbers to float."""
        if v is None:
            return None
        if isinstance(v, str):
            try:
                return float(v)
            except ValueError:
                raise ValueError(f"Cannot convert '{v}' to float")
        return float(v)

    @model_validator(mode="after")
    def failure_needs_reason(self) -> "CallResponse":
        if not self.ok and not self.error:
            self.error = "provider reported failure without a reason"
        return self


def validate_response(function: str, data: Dict[str, Any]) -> CallResponse:
    """Validate a provider response for ``function``.

    Raises:
        SchemaValidationError: If validation fails
    """
    if not isinstance(data, dict):
        raise SchemaValidationError(
            f"Response for '{function}' must be a JSON object with ok/value fields.\n"
            f"Received: {str(data)[:200]}"
        )
    try:
        return CallResponse.model_validate(data)
    except Exception as e:
        raise SchemaValidationError(
            f"Response for '{function}' failed schema validation: {e}\n"
            f"Received data: {data}"
        )
