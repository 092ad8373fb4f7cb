"""
Appeal state machine.

An appeal starts ``pending`` and ends ``active`` (access granted),
``rejected``, ``canceled`` or, once superseded or revoked, ``terminated``.
Terminal states are final. Approvals are decided strictly in index order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence
from uuid import uuid4

import structlog
from pydantic import ValidationError

from warden.approval.resolver import ApprovalResolver, skip_remaining, validate_email
from warden.audit.recorder import AuditRecorder
from warden.config import Settings, get_settings
from warden.core.errors import (
    ActionForbiddenError,
    ActionInvalidValueError,
    AppealDuplicateError,
    AppealIDEmptyError,
    ApprovalIDEmptyError,
    ApprovalNotFoundError,
    ApproverEmailError,
    ApproverNotFoundError,
    ConfigurationError,
    CreatorDetailsError,
    EmptyActorError,
    GrantAccessFailedError,
    InvalidInputError,
    ResourceIsDeletedError,
    UnableToAddApproverError,
    UnableToDeleteApproverError,
    WardenError,
)
from warden.core.timeutil import utcnow
from warden.domain.appeal import (
    Appeal,
    AppealActionName,
    AppealStatus,
    Approval,
    ApprovalAction,
    ApprovalStatus,
    ListAppealsFilter,
    check_appeal_pending,
    check_approval_status,
    check_previous_approval_status,
    normalize_appeal_status,
)
from warden.domain.grant import Grant, GrantStatus, ListGrantsFilter
from warden.domain.notification import Notification, NotificationMessage, NotificationType
from warden.domain.policy import IAMConfig, Policy
from warden.domain.resource import ResourceIdentifier
from warden.grant.service import GrantService
from warden.notifications import send_notifications
from warden.policies.service import PolicyService
from warden.providers.base import (
    AppealRepository,
    AuditLogger,
    IdentityManager,
    Notifier,
    ProviderService,
    ResourceService,
)

logger = structlog.get_logger()

AUDIT_KEY_APPEAL_CREATE = "appeal.create"
AUDIT_KEY_APPEAL_APPROVE = "appeal.approve"
AUDIT_KEY_APPEAL_REJECT = "appeal.reject"
AUDIT_KEY_APPEAL_CANCEL = "appeal.cancel"
AUDIT_KEY_APPEAL_REVOKE = "appeal.revoke"
AUDIT_KEY_ADD_APPROVER = "appeal.addApprover"
AUDIT_KEY_DELETE_APPROVER = "appeal.deleteApprover"

SUPERSEDED_GRANT_REASON = "Superseded by a newer appeal"
FAILED_ACTIVATION_REASON = "Appeal could not be saved"


def _appeal_key(appeal: Appeal) -> tuple[str, str, str]:
    return (appeal.account_id, appeal.resource_id, appeal.role)


def _resource_name(appeal: Appeal) -> str:
    return appeal.resource.display_name() if appeal.resource else appeal.resource_id


@dataclass
class _Activation:
    """Access granted for an appeal that is not saved yet."""

    appeal: Appeal
    grant: Grant
    previous: list[Appeal]
    stored: bool = False


class AppealService:
    def __init__(
        self,
        repository: AppealRepository,
        grant_service: GrantService,
        policy_service: PolicyService,
        resource_service: ResourceService,
        provider: ProviderService,
        notifier: Notifier | None = None,
        audit_logger: AuditLogger | None = None,
        *,
        resolver: ApprovalResolver | None = None,
        identity_manager: IdentityManager | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.repository = repository
        self.grant_service = grant_service
        self.policy_service = policy_service
        self.resource_service = resource_service
        self.provider = provider
        self.notifier = notifier
        self.audit = AuditRecorder(audit_logger)
        self.resolver = resolver or ApprovalResolver()
        self.identity_manager = identity_manager
        self.settings = settings or get_settings()

    async def get_by_id(self, id: str) -> Appeal:
        if not id:
            raise AppealIDEmptyError()
        return await self.repository.get_by_id(id)

    async def find(self, filter: ListAppealsFilter | None = None) -> list[Appeal]:
        return await self.repository.find(filter or ListAppealsFilter())

    async def create(self, appeals: Sequence[Appeal]) -> list[Appeal]:
        """Validate drafts, resolve their approvals and persist them.

        Drafts whose approvals all resolve automatically are activated
        before being stored. When an activation or the save fails, every
        access granted by this call is removed again and its grant record
        marked inactive.

        Raises:
            AppealDuplicateError: a pending appeal for the same account,
                resource and role exists
            ResourceNotFoundError, ResourceIsDeletedError
            PolicyNotFoundError, PolicyVersionNotFoundError
            InvalidDurationError
            ConfigurationError: approvals could not be resolved
            CreatorDetailsError: the policy's identity manager lookup failed
            GrantAccessFailedError
        """
        account_ids = sorted({appeal.account_id for appeal in appeals})
        existing = await self.repository.find(
            ListAppealsFilter(statuses=[AppealStatus.pending], account_ids=account_ids)
        )
        pending_keys = {_appeal_key(appeal) for appeal in existing}

        now = utcnow()
        policies: dict[str, Policy] = {}
        for appeal in appeals:
            appeal.set_defaults(self.settings.default_account_type)
            key = _appeal_key(appeal)
            if key in pending_keys:
                raise AppealDuplicateError(
                    details={"account_id": appeal.account_id, "resource_id": appeal.resource_id, "role": appeal.role}
                )

            resource = await self.resource_service.get(ResourceIdentifier(id=appeal.resource_id))
            if resource.is_deleted:
                raise ResourceIsDeletedError(details={"resource_id": resource.id})
            appeal.resource = resource

            policy = await self.policy_service.get_one(appeal.policy_id, appeal.policy_version)
            if policy.iam is not None:
                appeal.creator = await self._creator_details(appeal, policy.iam)
            if appeal.options is not None:
                appeal.options.validate_duration()

            appeal.id = appeal.id or str(uuid4())
            appeal.created_at = now
            appeal.updated_at = now
            appeal.pin_policy(policy.id, policy.version)
            appeal.approvals = self.resolver.resolve(policy, appeal)
            self.resolver.advance(policy, appeal)

            pending_keys.add(key)
            policies[appeal.id] = policy

        activations: list[_Activation] = []
        try:
            for appeal in appeals:
                if appeal.status == AppealStatus.active:
                    await self._activate(appeal, policies[appeal.id], activations)
            await self.repository.bulk_upsert(appeals)
        except Exception:
            await self._rollback_activations(activations)
            raise
        await self._supersede_previous(activations)

        for appeal in appeals:
            logger.info(
                "appeal_created",
                appeal_id=appeal.id,
                status=appeal.status,
                policy_id=appeal.policy_id,
                policy_version=appeal.policy_version,
            )
        await self.audit.record(AUDIT_KEY_APPEAL_CREATE, list(appeals))

        notifications: list[Notification] = []
        for appeal in appeals:
            notifications.extend(self._status_notifications(appeal))
        await send_notifications(self.notifier, notifications)
        return list(appeals)

    async def make_action(self, action: ApprovalAction | dict[str, Any]) -> Appeal:
        """Approve or reject one approval of a pending appeal."""
        if isinstance(action, dict):
            if action.get("action") not in set(AppealActionName):
                raise ActionInvalidValueError(details={"action": action.get("action")})
            try:
                action = ApprovalAction.model_validate(action)
            except ValidationError as exc:
                raise InvalidInputError(
                    f"validating approval action: {exc.errors(include_url=False)}"
                ) from exc
        if action.action not in set(AppealActionName):
            raise ActionInvalidValueError(details={"action": action.action})

        appeal = await self.get_by_id(action.appeal_id)
        check_appeal_pending(appeal.status)

        approval = self._check_actionable(appeal, action)
        approval.actor = action.actor
        approval.reason = action.reason
        policy: Policy | None = None
        if action.action == AppealActionName.approve:
            approval.approve()
            policy = await self.policy_service.get_one(appeal.policy_id, appeal.policy_version)
            self.resolver.advance(policy, appeal)
        else:
            approval.reject()
            skip_remaining(appeal, approval.index)
            appeal.reject()
        appeal.updated_at = utcnow()

        activations: list[_Activation] = []
        try:
            if appeal.status == AppealStatus.active:
                assert policy is not None
                await self._activate(appeal, policy, activations)
            await self.repository.update(appeal)
        except Exception:
            await self._rollback_activations(activations)
            raise
        await self._supersede_previous(activations)

        logger.info(
            "appeal_action_applied",
            appeal_id=appeal.id,
            approval=approval.name,
            action=action.action,
            actor=action.actor,
            status=appeal.status,
        )
        await send_notifications(self.notifier, self._status_notifications(appeal), appeal_id=appeal.id)
        audit_key = AUDIT_KEY_APPEAL_APPROVE if action.action == AppealActionName.approve else AUDIT_KEY_APPEAL_REJECT
        await self.audit.record(audit_key, action)
        return appeal

    async def cancel(self, id: str) -> Appeal:
        appeal = await self.get_by_id(id)
        appeal.cancel()
        await self.repository.update(appeal)
        logger.info("appeal_canceled", appeal_id=appeal.id)
        await self.audit.record(AUDIT_KEY_APPEAL_CANCEL, {"appeal_id": appeal.id})
        return appeal

    async def revoke(self, id: str, actor: str, reason: str) -> Appeal:
        """Terminate an active appeal and remove the access it granted.

        The appeal is stored as ``terminated`` first, then its active grants
        are revoked. When a grant cannot be revoked the appeal is restored
        and the grant error is raised.

        Raises:
            InvalidStateTransitionError: the appeal is not active
            GrantRevokeFailedError, GrantRollbackFailedError
        """
        if not actor:
            raise EmptyActorError()
        appeal = await self.get_by_id(id)
        snapshot = appeal.model_copy(deep=True)
        log = logger.bind(appeal_id=appeal.id, actor=actor)

        appeal.terminate(actor=actor, reason=reason)
        await self.repository.update(appeal)

        grants = await self.grant_service.list(
            ListGrantsFilter(
                statuses=[GrantStatus.active],
                account_ids=[appeal.account_id],
                resource_ids=[appeal.resource_id],
                roles=[appeal.role],
            )
        )
        try:
            for grant in grants:
                if grant.appeal_id != appeal.id:
                    continue
                await self.grant_service.revoke(grant.id, actor, reason, skip_notifications=True)
        except Exception as exc:
            log.error("appeal_revoke_failed", error=str(exc))
            await self.repository.update(snapshot)
            raise

        log.info("appeal_revoked", reason=reason)
        notification = Notification(
            user=appeal.created_by,
            message=NotificationMessage(
                type=NotificationType.access_revoked,
                variables={"resource_name": _resource_name(appeal), "role": appeal.role, "appeal_id": appeal.id},
            ),
        )
        await send_notifications(self.notifier, [notification], appeal_id=appeal.id)
        await self.audit.record(AUDIT_KEY_APPEAL_REVOKE, {"appeal_id": appeal.id, "reason": reason})
        return appeal

    async def add_approver(self, appeal_id: str, approval_id: str, email: str) -> Appeal:
        appeal, approval, email = await self._load_editable_approval(appeal_id, approval_id, email)
        if email in approval.approvers:
            raise UnableToAddApproverError(
                "approver already exists", details={"approval": approval.name, "approver": email}
            )

        approval.approvers.append(email)
        approval.updated_at = utcnow()
        await self.repository.update(appeal)
        logger.info("approver_added", appeal_id=appeal.id, approval=approval.name, approver=email)
        await self.audit.record(
            AUDIT_KEY_ADD_APPROVER,
            {"appeal_id": appeal.id, "approval_id": approval.id, "approval_name": approval.name, "approver": email},
        )
        if approval.status == ApprovalStatus.pending:
            await send_notifications(
                self.notifier, [self._approver_notification(appeal, approval, email)], appeal_id=appeal.id
            )
        return appeal

    async def delete_approver(self, appeal_id: str, approval_id: str, email: str) -> Appeal:
        appeal, approval, email = await self._load_editable_approval(appeal_id, approval_id, email)
        if email not in approval.approvers:
            raise ApproverNotFoundError(details={"approval": approval.name, "approver": email})
        if len(approval.approvers) == 1:
            raise UnableToDeleteApproverError(
                "an approval must keep at least one approver", details={"approval": approval.name}
            )

        approval.approvers.remove(email)
        approval.updated_at = utcnow()
        await self.repository.update(appeal)
        logger.info("approver_deleted", appeal_id=appeal.id, approval=approval.name, approver=email)
        await self.audit.record(
            AUDIT_KEY_DELETE_APPROVER,
            {"appeal_id": appeal.id, "approval_id": approval.id, "approval_name": approval.name, "approver": email},
        )
        return appeal

    def _check_actionable(self, appeal: Appeal, action: ApprovalAction) -> Approval:
        if all(approval.name != action.approval_name for approval in appeal.approvals):
            raise ApprovalNotFoundError(details={"appeal_id": appeal.id, "approval_name": action.approval_name})
        for approval in appeal.approvals:
            if approval.name != action.approval_name:
                check_previous_approval_status(approval.status)
                continue
            if approval.status != ApprovalStatus.pending:
                check_approval_status(approval.status)
            if action.actor not in approval.approvers:
                raise ActionForbiddenError(details={"approval": approval.name, "actor": action.actor})
            return approval
        raise ApprovalNotFoundError(details={"appeal_id": appeal.id, "approval_name": action.approval_name})

    async def _load_editable_approval(
        self, appeal_id: str, approval_id: str, email: str
    ) -> tuple[Appeal, Approval, str]:
        if not approval_id:
            raise ApprovalIDEmptyError()
        try:
            email = validate_email(email)
        except ValidationError as exc:
            raise ApproverEmailError(details={"approver": email}) from exc

        appeal = await self.get_by_id(appeal_id)
        check_appeal_pending(appeal.status)

        approval = appeal.get_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(details={"appeal_id": appeal.id, "approval": approval_id})
        if approval.status not in (ApprovalStatus.pending, ApprovalStatus.blocked):
            raise UnableToAddApproverError(
                f"approval is already {approval.status}", details={"approval": approval.name}
            )
        if not approval.is_manual:
            raise UnableToAddApproverError("approval is not manual", details={"approval": approval.name})
        return appeal, approval, email

    async def _activate(self, appeal: Appeal, policy: Policy, activations: list[_Activation]) -> None:
        """Grant the access an active appeal entitles to.

        Spawns required additional appeals, grants the access in the provider
        and stores the grant. The activation joins ``activations`` as soon as
        the provider holds the access.
        Previously active appeals for the same account, resource and role are
        only looked up here; they are terminated once the caller has saved
        the appeal.
        """
        log = logger.bind(appeal_id=appeal.id, account_id=appeal.account_id, resource_id=appeal.resource_id)

        previous = await self.repository.find(
            ListAppealsFilter(
                statuses=[AppealStatus.active],
                account_id=appeal.account_id,
                resource_id=appeal.resource_id,
                role=appeal.role,
            )
        )

        for draft in await self.resolver.resolve_requirements(policy, appeal, self.resource_service):
            try:
                await self.create([draft])
            except AppealDuplicateError:
                log.info("additional_appeal_exists", resource_id=draft.resource_id, role=draft.role)

        grant = await self.grant_service.prepare(appeal)
        try:
            await self.provider.grant_access(grant)
        except WardenError:
            raise
        except Exception as exc:
            raise GrantAccessFailedError(
                f"granting access in provider: {exc}",
                details={"appeal_id": appeal.id, "grant_id": grant.id},
            ) from exc

        activation = _Activation(appeal, grant, [old for old in previous if old.id != appeal.id])
        activations.append(activation)
        await self.grant_service.repository.bulk_upsert([grant])
        activation.stored = True
        log.info("access_granted", grant_id=grant.id, role=appeal.role, expiration_date=grant.expiration_date)

    async def _rollback_activations(self, activations: Sequence[_Activation]) -> None:
        """Undo activations whose appeal could not be saved.

        Provider access is removed unless a previous appeal still holds the
        same role, and stored grants are marked inactive. Errors are logged so
        that the original failure reaches the caller.
        """
        actor = self.settings.system_actor_name
        for activation in activations:
            grant = activation.grant
            log = logger.bind(grant_id=grant.id, appeal_id=activation.appeal.id)
            log.warning("rolling_back_activation", stored=activation.stored, previous=len(activation.previous))
            if not activation.previous:
                try:
                    await self.provider.revoke_access(grant)
                except Exception as exc:
                    log.error("activation_provider_revoke_failed", error=str(exc))
            if activation.stored:
                try:
                    grant.revoke(actor, FAILED_ACTIVATION_REASON)
                    await self.grant_service.repository.update(grant)
                except Exception as exc:
                    log.error("activation_grant_rollback_failed", error=str(exc))

    async def _supersede_previous(self, activations: Sequence[_Activation]) -> None:
        for activation in activations:
            for old in activation.previous:
                try:
                    await self._supersede(old, activation.appeal, activation.grant)
                except WardenError as exc:
                    logger.error(
                        "appeal_supersede_failed",
                        appeal_id=activation.appeal.id,
                        previous_appeal_id=old.id,
                        error=str(exc),
                    )
                    continue
                logger.info("appeal_extended", appeal_id=activation.appeal.id, previous_appeal_id=old.id)

    async def _supersede(self, old: Appeal, appeal: Appeal, grant: Grant) -> None:
        old.terminate(actor=appeal.created_by or None, reason=SUPERSEDED_GRANT_REASON)
        await self.repository.update(old)

        grants = await self.grant_service.list(
            ListGrantsFilter(
                statuses=[GrantStatus.active],
                account_ids=[old.account_id],
                resource_ids=[old.resource_id],
                roles=[old.role],
            )
        )
        actor = appeal.created_by or self.settings.system_actor_name
        for previous_grant in grants:
            if previous_grant.id == grant.id:
                continue
            await self.grant_service.revoke(
                previous_grant.id,
                actor,
                SUPERSEDED_GRANT_REASON,
                skip_notifications=True,
                skip_revoke_in_provider=True,
            )

    async def _creator_details(self, appeal: Appeal, iam: IAMConfig) -> dict[str, Any]:
        """Look up the creator and map the user through ``iam.user_schema``."""
        if self.identity_manager is None:
            raise ConfigurationError(
                "policy requires an identity manager", details={"policy_id": appeal.policy_id}
            )
        try:
            user = await self.identity_manager.get_user(iam, appeal.created_by)
        except Exception as exc:
            raise CreatorDetailsError(
                f"fetching creator's user details: {exc}",
                details={"policy_id": appeal.policy_id, "created_by": appeal.created_by},
            ) from exc
        if not iam.user_schema:
            return dict(user)
        return {key: user.get(source) for key, source in iam.user_schema.items()}

    def _status_notifications(self, appeal: Appeal) -> list[Notification]:
        status = normalize_appeal_status(appeal.status)
        variables = {"resource_name": _resource_name(appeal), "role": appeal.role, "appeal_id": appeal.id}
        if status == AppealStatus.active:
            return [
                Notification(
                    user=appeal.created_by,
                    message=NotificationMessage(type=NotificationType.appeal_approved, variables=variables),
                )
            ]
        if status == AppealStatus.rejected:
            return [
                Notification(
                    user=appeal.created_by,
                    message=NotificationMessage(type=NotificationType.appeal_rejected, variables=variables),
                )
            ]

        approval = appeal.next_pending_approval()
        if approval is None:
            return []
        return [self._approver_notification(appeal, approval, approver) for approver in approval.approvers]

    def _approver_notification(self, appeal: Appeal, approval: Approval, approver: str) -> Notification:
        return Notification(
            user=approver,
            message=NotificationMessage(
                type=NotificationType.approver_notification,
                variables={
                    "resource_name": _resource_name(appeal),
                    "role": appeal.role,
                    "requestor": appeal.created_by,
                    "appeal_id": appeal.id,
                    "approval_step": approval.name,
                },
            ),
        )
