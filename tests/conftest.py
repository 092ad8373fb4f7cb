"""Root test configuration."""

import logging
from datetime import timedelta

import pytest
import structlog
from warden.config import Settings
from warden.core.timeutil import utcnow
from warden.domain.grant import Grant, GrantStatus
from warden.domain.resource import Resource


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class StubProvider:
    """Provider double recording calls.

    Revoking fails for grant ids in ``fail_on``; granting fails for roles in
    ``fail_grant_roles``.
    """

    def __init__(self, fail_on=None, fail_grant_roles=None):
        self.fail_on = set(fail_on or [])
        self.fail_grant_roles = set(fail_grant_roles or [])
        self.granted = []
        self.revoked = []

    async def grant_access(self, grant):
        if grant.role in self.fail_grant_roles:
            raise RuntimeError(f"provider rejected role {grant.role}")
        self.granted.append(grant)

    async def revoke_access(self, grant):
        if grant.id in self.fail_on:
            raise RuntimeError(f"provider unavailable for {grant.id}")
        self.revoked.append(grant)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        revoke_batch_size=100,
        revoke_interval_seconds=0.01,
        revoke_max_workers=4,
    )


@pytest.fixture
def resource():
    return Resource(
        id="res-1",
        provider_type="bigquery",
        provider_urn="gcp-project",
        type="dataset",
        urn="project:dataset",
        name="dataset",
        details={"owner": "owner@example.com"},
    )


@pytest.fixture
def make_grant(resource):
    def _make(grant_id, *, resource_id=None, account_id="user@example.com", **kwargs):
        res = resource.model_copy(update={"id": resource_id}) if resource_id else resource
        values = dict(
            id=grant_id,
            status=GrantStatus.active,
            account_id=account_id,
            account_type="user",
            resource_id=res.id,
            resource=res,
            role="viewer",
            owner=account_id,
            created_by=account_id,
            expiration_date=utcnow() + timedelta(days=1),
        )
        values.update(kwargs)
        return Grant(**values)

    return _make


@pytest.fixture
def provider():
    return StubProvider()


@pytest.fixture
def make_provider():
    return StubProvider
