"""
Render payload schema.

A render payload is everything the renderer needs to produce a document
artifact: a template descriptor and an ordered list of typed field
bindings. The same validated shape is used for the snapshot persisted at
request time, for operator-supplied override JSON at approval time, and
for templates stored on a document type.

The payload is versioned. Version 1 is the only version accepted.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Template descriptors (tagged union)
# ---------------------------------------------------------------------------

class RegisteredTemplate(BaseModel):
    """A template file shipped with the service, addressed by relative path."""

    kind: Literal["registered"] = "registered"
    path: str = Field(..., min_length=1)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("path")
    @classmethod
    def path_stays_relative(cls, v: str) -> str:
        if v.startswith("/") or ".." in v.split("/"):
            raise ValueError("template path must be relative to the template root")
        return v


class InlineTemplate(BaseModel):
    """Template source authored by an operator and stored with the document type."""

    kind: Literal["inline"] = "inline"
    source: str = Field(..., min_length=1)

    model_config = ConfigDict(frozen=True, extra="forbid")


TemplateDescriptor = Annotated[
    Union[RegisteredTemplate, InlineTemplate],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Field bindings
# ---------------------------------------------------------------------------

class BindingKind(str, Enum):
    TEXT = "text"
    QR_CODE = "qr_code"
    TABLE = "table"
    SIGNATURE = "signature"


class FieldBinding(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    kind: BindingKind = BindingKind.TEXT
    value: Any = None

    model_config = ConfigDict(frozen=True, extra="forbid")


QR_CODE_NAME = "QR_CODE"


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

class RenderPayload(BaseModel):
    version: Literal[1] = 1
    template: TemplateDescriptor
    bindings: List[FieldBinding] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("bindings")
    @classmethod
    def binding_names_unique(cls, v: List[FieldBinding]) -> List[FieldBinding]:
        seen: set[str] = set()
        for binding in v:
            if binding.name in seen:
                raise ValueError(f"duplicate binding name '{binding.name}'")
            seen.add(binding.name)
        return v

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[FieldBinding]:
        for binding in self.bindings:
            if binding.name == name:
                return binding
        return None

    def with_value(self, name: str, value: Any) -> "RenderPayload":
        """Return a copy with ``name`` rebound, keeping its kind and position."""
        bindings = [
            binding.model_copy(update={"value": value}) if binding.name == name else binding
            for binding in self.bindings
        ]
        return self.model_copy(update={"bindings": bindings})

    def is_qr_binding(self, binding: FieldBinding) -> bool:
        return binding.kind is BindingKind.QR_CODE or binding.name.upper() == QR_CODE_NAME

    def render_context(self) -> Dict[str, Any]:
        return {binding.name: binding.value for binding in self.bindings}

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def parse_json(cls, raw: str) -> "RenderPayload":
        """Parse and validate raw JSON; raises pydantic.ValidationError."""
        return cls.model_validate_json(raw)
