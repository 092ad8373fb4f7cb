from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator


class Resource(BaseModel):
    """Snapshot of a provider resource an appeal asks access to."""

    id: str = ""
    provider_type: str = ""
    provider_urn: str = ""
    type: str = ""
    urn: str = ""
    name: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    is_deleted: bool = False

    def display_name(self) -> str:
        return f"{self.name} ({self.provider_type}: {self.urn})"


class ResourceIdentifier(BaseModel):
    """Points at a resource by id, or by its provider/type/urn quadruple."""

    id: str | None = None
    provider_type: str | None = None
    provider_urn: str | None = None
    type: str | None = None
    urn: str | None = None

    @model_validator(mode="after")
    def _check_identity(self) -> "ResourceIdentifier":
        quad = [self.provider_type, self.provider_urn, self.type, self.urn]
        if self.id:
            return self
        if all(quad):
            return self
        raise ValueError("resource identifier requires either id or provider_type, provider_urn, type and urn")

    def matches(self, resource: Resource) -> bool:
        if self.id:
            return resource.id == self.id
        return (
            resource.provider_type == self.provider_type
            and resource.provider_urn == self.provider_urn
            and resource.type == self.type
            and resource.urn == self.urn
        )
