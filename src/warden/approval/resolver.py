"""
Approval resolution.

Turns a policy and an appeal into the appeal's ordered approval steps and
advances them: auto steps are decided from their ``approve_if`` expression as
soon as every step before them is approved or skipped, manual steps wait for
an approver.
"""

from __future__ import annotations

import uuid
from typing import Any, Mapping, Sequence

import structlog
from pydantic import EmailStr, TypeAdapter, ValidationError

from warden.core.errors import ApproverInvalidTypeError, ConfigurationError
from warden.domain.appeal import Appeal, ApprovalStatus, Approval
from warden.domain.policy import Policy, Step, StepStrategy
from warden.policies.expressions import compile_expression, looks_like_expression
from warden.providers.base import ResourceService

logger = structlog.get_logger()

_email_adapter: TypeAdapter[str] = TypeAdapter(EmailStr)


def validate_email(value: str) -> str:
    """Return the normalized email or raise pydantic's ValidationError."""
    return _email_adapter.validate_python(value)


class ApprovalResolver:
    """Builds and advances approval steps for an appeal."""

    def resolve(self, policy: Policy, appeal: Appeal) -> list[Approval]:
        """Create one approval per applicable step, all ``blocked``.

        Steps whose ``when`` expression is falsy are omitted. Callers run
        ``advance`` afterwards to open the first step.

        Raises:
            ConfigurationError: malformed expression, unresolvable approvers,
                or no applicable step
        """
        policy.validate_expressions()
        context = appeal.to_context()

        approvals: list[Approval] = []
        for step in policy.steps:
            if step.when and not compile_expression(step.when).is_true(context):
                logger.debug("approval_step_omitted", policy_id=policy.id, step=step.name)
                continue

            approvers: list[str] = []
            if step.strategy == StepStrategy.manual:
                try:
                    approvers = self.resolve_approvers(step.approvers, context)
                except ConfigurationError as exc:
                    raise ConfigurationError(
                        f"resolving approvers of step {step.name!r}: {exc.message}",
                        details={"policy_id": policy.id, "step": step.name, **exc.details},
                    ) from exc

            approvals.append(
                Approval(
                    id=str(uuid.uuid4()),
                    name=step.name,
                    index=len(approvals),
                    appeal_id=appeal.id,
                    status=ApprovalStatus.blocked,
                    approvers=approvers,
                    policy_id=policy.id,
                    policy_version=policy.version,
                )
            )

        if not approvals:
            raise ConfigurationError(
                "policy has no applicable approval step for this appeal",
                details={"policy_id": policy.id, "version": policy.version},
            )
        return approvals

    def resolve_approvers(self, expressions: Sequence[str], context: Mapping[str, Any]) -> list[str]:
        approvers: list[str] = []
        for entry in expressions:
            if not looks_like_expression(entry):
                approvers.append(entry)
                continue

            value = compile_expression(entry).evaluate(context)
            if value is None:
                raise ConfigurationError(f"approver expression {entry!r} resolved to nothing")
            if isinstance(value, str):
                approvers.append(value)
            elif isinstance(value, (list, tuple)):
                for item in value:
                    if not isinstance(item, str):
                        raise ApproverInvalidTypeError(details={"expression": entry, "type": type(item).__name__})
                    approvers.append(item)
            else:
                raise ApproverInvalidTypeError(details={"expression": entry, "type": type(value).__name__})

        resolved: list[str] = []
        for approver in approvers:
            try:
                email = validate_email(approver)
            except ValidationError as exc:
                raise ConfigurationError(
                    f"approver is not a valid email: {approver!r}", details={"approver": approver}
                ) from exc
            if email not in resolved:
                resolved.append(email)

        if not resolved:
            raise ConfigurationError("no approvers resolved")
        return resolved

    def advance(self, policy: Policy, appeal: Appeal) -> None:
        """Open the next step and decide auto steps until a manual step is reached.

        Marks the appeal ``active`` once the last step is approved or skipped,
        ``rejected`` when an auto step fails without ``allow_failed``.
        """
        if not appeal.is_pending():
            return

        for i, approval in enumerate(appeal.approvals):
            if approval.status == ApprovalStatus.rejected:
                return
            if approval.is_terminal:
                continue

            approval.unblock()
            step = self._step_for(policy, approval)
            if step.strategy == StepStrategy.manual:
                break

            assert step.approve_if is not None
            if compile_expression(step.approve_if).is_true(appeal.to_context()):
                approval.approve()
            elif step.allow_failed:
                approval.skip()
            else:
                approval.reject()
                approval.reason = step.rejection_reason
                skip_remaining(appeal, i)
                appeal.reject()
                logger.info(
                    "appeal_auto_rejected",
                    appeal_id=appeal.id,
                    step=step.name,
                    reason=step.rejection_reason,
                )
                return
            logger.debug("auto_step_decided", appeal_id=appeal.id, step=step.name, status=approval.status)

        if all(a.status in (ApprovalStatus.approved, ApprovalStatus.skipped) for a in appeal.approvals):
            appeal.activate()

    async def resolve_requirements(
        self,
        policy: Policy,
        appeal: Appeal,
        resource_service: ResourceService,
    ) -> list[Appeal]:
        """Build the additional appeal drafts whose requirement trigger matches."""
        drafts: list[Appeal] = []
        for i, requirement in enumerate(policy.requirements):
            try:
                matched = requirement.on.is_match(appeal)
            except ConfigurationError as exc:
                raise ConfigurationError(f"evaluating requirements[{i}]: {exc.message}", details=exc.details) from exc
            if not matched:
                continue

            for additional in requirement.appeals:
                resource = await resource_service.get(additional.resource)
                draft = Appeal(
                    resource_id=resource.id,
                    resource=resource,
                    account_id=appeal.account_id,
                    account_type=appeal.account_type,
                    created_by=appeal.created_by,
                    role=additional.role,
                    options=additional.options,
                )
                if additional.policy is not None:
                    draft.policy_id = additional.policy.id
                    draft.policy_version = additional.policy.version
                else:
                    draft.policy_id = appeal.policy_id
                drafts.append(draft)

            logger.info(
                "requirement_matched",
                appeal_id=appeal.id,
                requirement_index=i,
                additional_appeals=len(requirement.appeals),
            )
        return drafts

    @staticmethod
    def _step_for(policy: Policy, approval: Approval) -> Step:
        step = policy.get_step(approval.name)
        if step is None:
            raise ConfigurationError(
                "unable to resolve approval step",
                details={"policy_id": policy.id, "version": policy.version, "step": approval.name},
            )
        return step


def skip_remaining(appeal: Appeal, index: int) -> None:
    """Skip every undecided approval after ``index``."""
    for approval in appeal.approvals[index + 1 :]:
        if approval.status in (ApprovalStatus.pending, ApprovalStatus.blocked):
            approval.skip()
