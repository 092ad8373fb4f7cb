from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from warden.config import Settings
from warden.core.errors import AppealNotFoundError, GrantNotFoundError, PolicyDuplicateError
from warden.core.timeutil import utcnow
from warden.db.models import Base
from warden.db.repositories import AppealRepository, AuditRepository, GrantRepository, PolicyRepository
from warden.db.session import create_schema, dispose_engine, get_session, init_engine
from warden.domain.appeal import Appeal, AppealStatus, Approval, ApprovalStatus, ListAppealsFilter
from warden.domain.grant import GrantStatus, ListGrantsFilter
from warden.domain.policy import Policy, Step
from warden.grant.revocation import RevocationEngine, group_by_resource


@pytest.fixture
async def session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        yield session

    await engine.dispose()


@pytest.mark.asyncio
async def test_grant_round_trip(session, make_grant):
    repo = GrantRepository(session)
    grant = make_grant("grant-1")

    await repo.bulk_insert([grant])
    await session.commit()

    retrieved = await repo.get_by_id("grant-1")
    assert retrieved.account_id == "user@example.com"
    assert retrieved.resource.details == {"owner": "owner@example.com"}
    assert retrieved.expiration_date == grant.expiration_date
    assert retrieved.expiration_date.tzinfo is not None
    assert retrieved.status == GrantStatus.active


@pytest.mark.asyncio
async def test_bulk_insert_assigns_missing_ids(session, make_grant):
    repo = GrantRepository(session)
    grant = make_grant("")

    await repo.bulk_insert([grant])

    assert grant.id
    assert (await repo.get_by_id(grant.id)).id == grant.id


@pytest.mark.asyncio
async def test_grant_update(session, make_grant):
    repo = GrantRepository(session)
    grant = make_grant("grant-1")
    await repo.bulk_insert([grant])
    await session.commit()

    grant.revoke("admin@example.com", "offboarding")
    await repo.update(grant)
    await session.commit()

    retrieved = await repo.get_by_id("grant-1")
    assert retrieved.status == GrantStatus.inactive
    assert retrieved.revoked_by == "admin@example.com"
    assert retrieved.revoke_reason == "offboarding"


@pytest.mark.asyncio
async def test_grant_not_found(session, make_grant):
    repo = GrantRepository(session)

    with pytest.raises(GrantNotFoundError):
        await repo.get_by_id("missing")
    with pytest.raises(GrantNotFoundError):
        await repo.update(make_grant("missing"))


@pytest.mark.asyncio
async def test_grant_list_filters(session, make_grant):
    repo = GrantRepository(session)
    now = utcnow()
    expired = make_grant("expired", expiration_date=now - timedelta(hours=1))
    current = make_grant("current", expiration_date=now + timedelta(hours=1))
    permanent = make_grant("permanent", expiration_date=None, is_permanent=True)
    other = make_grant("other", account_id="other@example.com", expiration_date=now - timedelta(hours=1))
    await repo.bulk_insert([expired, current, permanent, other])
    await session.commit()

    due = await repo.list(
        ListGrantsFilter(
            statuses=[GrantStatus.active],
            account_ids=["user@example.com"],
            is_permanent=False,
            expiration_date_lt=now,
        )
    )
    assert [g.id for g in due] == ["expired"]

    by_provider = await repo.list(ListGrantsFilter(provider_types=["bigquery"]))
    assert len(by_provider) == 4
    assert await repo.list(ListGrantsFilter(provider_types=["gcs"])) == []


@pytest.mark.asyncio
async def test_bulk_upsert_overwrites(session, make_grant):
    repo = GrantRepository(session)
    await repo.bulk_upsert([make_grant("grant-1")])
    await repo.bulk_upsert([make_grant("grant-1", owner="new-owner@example.com")])
    await session.commit()

    grants = await repo.list(ListGrantsFilter())
    assert len(grants) == 1
    assert grants[0].owner == "new-owner@example.com"


@pytest.mark.asyncio
async def test_concurrent_revocation_shares_session(session, make_grant, provider):
    repo = GrantRepository(session)
    grants = [make_grant(f"g-{n}", resource_id=f"res-{n % 3}") for n in range(6)]
    await repo.bulk_insert(grants)
    await session.commit()

    engine = RevocationEngine(provider, repo, batch_size=100, interval=0.01, max_workers=3)
    result = await engine.run(group_by_resource(grants), "admin@example.com", "offboarding")
    await session.commit()

    assert result.success_count == 6
    remaining = await repo.list(ListGrantsFilter(statuses=[GrantStatus.active]))
    assert remaining == []


def _appeal(appeal_id, **kwargs):
    values = dict(
        id=appeal_id,
        resource_id="res-1",
        policy_id="policy-1",
        policy_version=1,
        account_id="user@example.com",
        created_by="user@example.com",
        role="viewer",
        approvals=[
            Approval(
                id=f"{appeal_id}-approval",
                name="owner",
                appeal_id=appeal_id,
                status=ApprovalStatus.pending,
                approvers=["owner@example.com"],
                policy_id="policy-1",
                policy_version=1,
            )
        ],
    )
    values.update(kwargs)
    return Appeal(**values)


@pytest.mark.asyncio
async def test_appeal_round_trip(session, resource):
    repo = AppealRepository(session)
    await repo.bulk_upsert(
        [_appeal("appeal-1", resource=resource, details={"ticket": "OPS-1"}, creator={"manager": "boss@x.com"})]
    )
    await session.commit()

    retrieved = await repo.get_by_id("appeal-1")
    assert retrieved.resource == resource
    assert retrieved.details == {"ticket": "OPS-1"}
    assert retrieved.creator == {"manager": "boss@x.com"}
    assert retrieved.approvals[0].name == "owner"
    assert retrieved.approvals[0].approvers == ["owner@example.com"]
    assert retrieved.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_appeal_update_and_find(session):
    repo = AppealRepository(session)
    await repo.bulk_upsert([_appeal("appeal-1"), _appeal("appeal-2", role="editor")])
    await session.commit()

    appeal = await repo.get_by_id("appeal-1")
    appeal.approvals[0].approve()
    appeal.activate()
    await repo.update(appeal)
    await session.commit()

    active = await repo.find(ListAppealsFilter(statuses=[AppealStatus.active]))
    assert [a.id for a in active] == ["appeal-1"]
    assert active[0].approvals[0].status == ApprovalStatus.approved

    editors = await repo.find(ListAppealsFilter(account_id="user@example.com", role="editor"))
    assert [a.id for a in editors] == ["appeal-2"]


@pytest.mark.asyncio
async def test_appeal_not_found(session):
    repo = AppealRepository(session)

    with pytest.raises(AppealNotFoundError):
        await repo.get_by_id("missing")
    with pytest.raises(AppealNotFoundError):
        await repo.update(_appeal("missing"))


@pytest.mark.asyncio
async def test_policy_versions(session):
    repo = PolicyRepository(session)
    steps = [Step(name="owner", approvers=["owner@example.com"])]
    await repo.create(Policy(id="policy-1", version=1, steps=steps))
    await repo.create(Policy(id="policy-1", version=2, description="second", steps=steps))
    await repo.create(Policy(id="policy-2", version=1, steps=steps))
    await session.commit()

    latest = await repo.get_one("policy-1")
    assert latest.version == 2
    assert latest.description == "second"
    assert (await repo.get_one("policy-1", 1)).version == 1
    assert await repo.get_one("policy-1", 5) is None
    assert await repo.get_one("missing") is None

    found = await repo.find()
    assert sorted((p.id, p.version) for p in found) == [("policy-1", 2), ("policy-2", 1)]

    with pytest.raises(PolicyDuplicateError):
        await repo.create(Policy(id="policy-1", version=1, description="replaced", steps=steps))
    assert (await repo.get_one("policy-1", 1)).description == ""


@pytest.mark.asyncio
async def test_audit_repository(session):
    repo = AuditRepository(session, actor="admin@example.com")

    await repo.log("grant.revoke", {"id": "grant-1"})
    await repo.log("appeal.create", [{"id": "appeal-1"}])
    await session.commit()

    entries = await repo.list()
    assert [e.action for e in entries] == ["grant.revoke", "appeal.create"]
    assert entries[0].actor == "admin@example.com"
    assert entries[0].data == {"id": "grant-1"}

    revokes = await repo.list(action="grant.revoke")
    assert len(revokes) == 1


@pytest.mark.asyncio
async def test_session_lifecycle(tmp_path):
    init_engine(Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'warden.db'}"))
    try:
        await create_schema()

        async for session in get_session():
            await AuditRepository(session).log("policy.create", {"policy_id": "policy-1"})
            await session.commit()

        async for session in get_session():
            entries = await AuditRepository(session).list()
            assert [e.action for e in entries] == ["policy.create"]
    finally:
        await dispose_engine()
