from __future__ import annotations

import re
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from warden.core.errors import ConfigurationError, InvalidConditionFieldError
from warden.core.timeutil import utcnow
from warden.domain.appeal import AppealOptions
from warden.domain.resource import ResourceIdentifier
from warden.policies.expressions import compile_expression, looks_like_expression

if TYPE_CHECKING:
    from warden.domain.appeal import Appeal

RESOURCE_FIELD_PREFIX = "$resource"


class StepStrategy(StrEnum):
    auto = "auto"
    manual = "manual"


class MatchCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    eq: Any = None


class Condition(BaseModel):
    """Field/equality predicate over the appeal's resource snapshot."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(min_length=1)
    match: MatchCondition

    def _path(self) -> list[str]:
        if not self.field.startswith(f"{RESOURCE_FIELD_PREFIX}."):
            raise InvalidConditionFieldError(
                f"evaluating field: {self.field}: unable to parse condition's field",
                details={"field": self.field},
            )
        return self.field[len(RESOURCE_FIELD_PREFIX) + 1 :].split(".")

    def validate_field(self) -> None:
        self._path()

    def is_match(self, appeal: Appeal) -> bool:
        path = self._path()
        value: Any = appeal.resource.model_dump(mode="json") if appeal.resource else {}
        for key in path:
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        return value == self.match.eq


class Step(BaseModel):
    """An individual process within an approval flow."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    when: str | None = None
    strategy: StepStrategy = StepStrategy.manual
    approve_if: str | None = None
    rejection_reason: str = ""
    allow_failed: bool = False
    approvers: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_strategy(self) -> "Step":
        if self.strategy == StepStrategy.manual and not self.approvers:
            raise ValueError(f"step {self.name!r}: manual steps require approvers")
        if self.strategy == StepStrategy.auto and not self.approve_if:
            raise ValueError(f"step {self.name!r}: auto steps require approve_if")
        return self

    def validate_expressions(self) -> None:
        if self.when:
            compile_expression(self.when)
        if self.approve_if:
            compile_expression(self.approve_if)
        for approver in self.approvers:
            if looks_like_expression(approver):
                compile_expression(approver)


class RequirementTrigger(BaseModel):
    """Matches an appeal by provider/resource/role regex and resource conditions."""

    model_config = ConfigDict(frozen=True)

    provider_type: str | None = None
    provider_urn: str | None = None
    resource_type: str | None = None
    resource_urn: str | None = None
    role: str | None = None
    conditions: list[Condition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_not_empty(self) -> "RequirementTrigger":
        if not any(
            [self.provider_type, self.provider_urn, self.resource_type, self.resource_urn, self.role, self.conditions]
        ):
            raise ValueError("requirement trigger needs at least one criterion")
        return self

    def _patterns(self, appeal: Appeal) -> list[tuple[str, str]]:
        resource = appeal.resource
        candidates = [
            (self.provider_type, resource.provider_type if resource else ""),
            (self.provider_urn, resource.provider_urn if resource else ""),
            (self.resource_type, resource.type if resource else ""),
            (self.resource_urn, resource.urn if resource else ""),
            (self.role, appeal.role),
        ]
        return [(pattern, value) for pattern, value in candidates if pattern]

    def validate_patterns(self) -> None:
        for pattern in [self.provider_type, self.provider_urn, self.resource_type, self.resource_urn, self.role]:
            if pattern:
                _compile_pattern(pattern)
        for condition in self.conditions:
            condition.validate_field()

    def is_match(self, appeal: Appeal) -> bool:
        for pattern, value in self._patterns(appeal):
            if not _compile_pattern(pattern).search(value or ""):
                return False
        for i, condition in enumerate(self.conditions):
            try:
                if not condition.is_match(appeal):
                    return False
            except ConfigurationError as exc:
                raise ConfigurationError(f"evaluating conditions[{i}]: {exc.message}", details=exc.details) from exc
        return True


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"invalid trigger pattern {pattern!r}: {exc}") from exc


class PolicyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    version: int | None = None


class AdditionalAppeal(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: ResourceIdentifier
    role: str = Field(min_length=1)
    options: AppealOptions | None = None
    policy: PolicyConfig | None = None


class Requirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    on: RequirementTrigger
    appeals: list[AdditionalAppeal] = Field(min_length=1)


class IAMConfig(BaseModel):
    """Identity-manager metadata used to enrich creator details."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    provider: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    user_schema: dict[str, str] = Field(default_factory=dict, alias="schema")


class Policy(BaseModel):
    """Approval policy. A stored version is never mutated, only superseded."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    version: int = 0
    description: str = ""
    steps: list[Step] = Field(min_length=1)
    requirements: list[Requirement] = Field(default_factory=list)
    iam: IAMConfig | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_unique_steps(self) -> "Policy":
        names = [step.name for step in self.steps]
        if len(names) != len(set(names)):
            raise ValueError(f"policy {self.id!r}: step names must be unique")
        return self

    def get_step(self, name: str) -> Step | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def validate_expressions(self) -> None:
        """Compile every expression and pattern; raises ConfigurationError."""
        for step in self.steps:
            step.validate_expressions()
        for requirement in self.requirements:
            requirement.on.validate_patterns()
