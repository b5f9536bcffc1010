from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from sshmgmt.common.errors import (
    RecordNotFound,
    SellAlreadyVerified,
    StoreError,
    StoreErrorKind,
    UserError,
    UserErrorKind,
)
from sshmgmt.common.schemas import NewCustomer, NewNode, NewService, SellPatch, SellStatus
from sshmgmt.control_plane import db
from sshmgmt.control_plane import sells as sells_module
from sshmgmt.control_plane.node_client import NodeClient
from sshmgmt.control_plane.sells import INVOICE_PERIOD, SellOrchestrator

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeNodeAgent:
    """Minimal node agent behind ``httpx.MockTransport``; creation is atomic per username."""

    def __init__(self, barrier: asyncio.Barrier | None = None) -> None:
        self.accounts: dict[str, dict] = {}
        self.requests: list[dict] = []
        self.barrier = barrier
        self.before_create = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.barrier is not None:
            await self.barrier.wait()
        if self.before_create is not None:
            await self.before_create()
        if body["username"] in self.accounts:
            return httpx.Response(
                409,
                json={"Err": {"type": "user", "code": "UserAlreadyExists", "msg": "user already exists"}},
            )
        self.accounts[body["username"]] = body
        return httpx.Response(
            200,
            json={
                "Ok": {
                    "username": body["username"],
                    "password_hash": f"hash-of-{body['password']}",
                    "shell": "/bin/rbash",
                    "usergroup": body["group"],
                    "exp_date": body["exp_date"],
                }
            },
        )


@pytest_asyncio.fixture
async def store(tmp_path):
    engine = db.create_engine(f"sqlite+aiosqlite:///{tmp_path / 'sshmgmt.db'}")
    await db.ensure_schema(engine)
    factory = db.session_factory(engine)
    async with factory() as session:
        node = await db.insert_node(session, NewNode(address="http://node-a", token="node-token"))
        service = await db.insert_service(session, NewService(max_logins=3, price=100))
        await db.insert_customer(session, NewCustomer(id=42))
        await db.insert_customer(session, NewCustomer(id=555, ref_id=42))
        await session.commit()
    try:
        yield factory, node, service
    finally:
        await engine.dispose()


def _orchestrator(factory, agent: FakeNodeAgent) -> SellOrchestrator:
    client = NodeClient(httpx.AsyncClient(transport=httpx.MockTransport(agent)))
    return SellOrchestrator(factory, client, clock=lambda: FIXED_NOW)


@pytest.mark.asyncio
async def test_create_checks_references(store):
    factory, node, service = store
    orchestrator = _orchestrator(factory, FakeNodeAgent())

    with pytest.raises(RecordNotFound) as missing_user:
        await orchestrator.create(999, service.id, node.id)
    assert missing_user.value.entity == "user"
    with pytest.raises(RecordNotFound) as missing_service:
        await orchestrator.create(555, 99, node.id)
    assert missing_service.value.entity == "service"
    with pytest.raises(RecordNotFound) as missing_node:
        await orchestrator.create(555, service.id, 99)
    assert missing_node.value.entity == "node"

    assert await orchestrator.list_sells() == []


@pytest.mark.asyncio
async def test_create_credits_customer_referrer_by_default(store):
    factory, node, service = store
    orchestrator = _orchestrator(factory, FakeNodeAgent())

    inherited = await orchestrator.create(555, service.id, node.id)
    explicit = await orchestrator.create(555, service.id, node.id, referrer_id=7)
    unreferred = await orchestrator.create(42, service.id, node.id)

    assert inherited.status is SellStatus.UNVERIFIED
    assert inherited.ref_id == 42
    assert explicit.ref_id == 7
    assert unreferred.ref_id is None
    assert [sell.id for sell in await orchestrator.list_sells(ref_id=42)] == [inherited.id]
    assert [sell.id for sell in await orchestrator.list_sells(user_id=42)] == [unreferred.id]


@pytest.mark.asyncio
async def test_verify_provisions_account_and_records_credentials(store):
    factory, node, service = store
    agent = FakeNodeAgent()
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)

    verified = await orchestrator.verify(sell.id)

    expected_username = f"sshmgmt3x{sell.id:03d}"
    assert verified.status is SellStatus.VERIFIED
    assert verified.username == expected_username
    assert verified.firstbuy_date == FIXED_NOW
    assert verified.invoice_date == FIXED_NOW + INVOICE_PERIOD
    assert verified.password == agent.accounts[expected_username]["password"]
    assert verified.password_hash == f"hash-of-{verified.password}"
    assert agent.requests[0]["group"] == "grp3"
    assert agent.requests[0]["exp_date"] == (date.today() + timedelta(days=30)).isoformat()

    stored = await orchestrator.get(sell.id)
    assert stored.status is SellStatus.VERIFIED
    assert stored.username == expected_username
    assert stored.password == verified.password


@pytest.mark.asyncio
async def test_verify_passes_validity_days(store):
    factory, node, service = store
    agent = FakeNodeAgent()
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)

    await orchestrator.verify(sell.id, 5)

    assert agent.requests[0]["exp_date"] == (date.today() + timedelta(days=5)).isoformat()


@pytest.mark.asyncio
async def test_verify_twice_is_rejected_without_node_call(store):
    factory, node, service = store
    agent = FakeNodeAgent()
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)
    await orchestrator.verify(sell.id)

    with pytest.raises(SellAlreadyVerified):
        await orchestrator.verify(sell.id)
    assert len(agent.requests) == 1


@pytest.mark.asyncio
async def test_verify_missing_sell(store):
    factory, _, _ = store
    with pytest.raises(RecordNotFound):
        await _orchestrator(factory, FakeNodeAgent()).verify(404)


@pytest.mark.asyncio
async def test_node_failure_leaves_sell_unverified(store):
    factory, node, service = store
    agent = FakeNodeAgent()
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)
    agent.accounts[f"sshmgmt3x{sell.id:03d}"] = {}

    with pytest.raises(UserError) as exc:
        await orchestrator.verify(sell.id)

    assert exc.value.kind is UserErrorKind.USER_ALREADY_EXISTS
    stored = await orchestrator.get(sell.id)
    assert stored.status is SellStatus.UNVERIFIED
    assert stored.username is None


@pytest.mark.asyncio
async def test_concurrent_verify_creates_one_account(store):
    factory, node, service = store
    agent = FakeNodeAgent(barrier=asyncio.Barrier(2))
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)

    results = await asyncio.gather(
        orchestrator.verify(sell.id),
        orchestrator.verify(sell.id),
        return_exceptions=True,
    )

    successes = [result for result in results if not isinstance(result, BaseException)]
    failures = [result for result in results if isinstance(result, BaseException)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], UserError)
    assert failures[0].kind is UserErrorKind.USER_ALREADY_EXISTS
    assert len(agent.accounts) == 1

    stored = await orchestrator.get(sell.id)
    assert stored.status is SellStatus.VERIFIED
    assert stored.password == successes[0].password


@pytest.mark.asyncio
async def test_lost_race_after_account_creation_is_reported(store):
    factory, node, service = store
    agent = FakeNodeAgent()
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)

    async def concurrent_verification() -> None:
        async with factory() as session:
            await db.mark_sell_verified(
                session,
                sell.id,
                firstbuy_date=FIXED_NOW,
                invoice_date=FIXED_NOW,
                username="winner",
                password="winner-password",
                password_hash="winner-hash",
            )
            await session.commit()

    agent.before_create = concurrent_verification
    orphans_before = sells_module.ORPHANED_ACCOUNTS.value()

    with pytest.raises(SellAlreadyVerified):
        await orchestrator.verify(sell.id)

    assert sells_module.ORPHANED_ACCOUNTS.value() == orphans_before + 1
    assert (await orchestrator.get(sell.id)).username == "winner"


@pytest.mark.asyncio
async def test_store_failure_after_account_creation_propagates(store, monkeypatch):
    factory, node, service = store
    agent = FakeNodeAgent()
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)

    async def failing_update(*args, **kwargs):
        raise StoreError(StoreErrorKind.UNEXPECTED, raw_message="database is locked")

    monkeypatch.setattr(sells_module.db, "mark_sell_verified", failing_update)
    orphans_before = sells_module.ORPHANED_ACCOUNTS.value()

    with pytest.raises(StoreError):
        await orchestrator.verify(sell.id)

    assert sells_module.ORPHANED_ACCOUNTS.value() == orphans_before + 1
    assert len(agent.accounts) == 1
    assert (await orchestrator.get(sell.id)).status is SellStatus.UNVERIFIED


@pytest.mark.asyncio
async def test_update_applies_patch_but_not_status(store):
    factory, node, service = store
    orchestrator = _orchestrator(factory, FakeNodeAgent())
    sell = await orchestrator.create(555, service.id, node.id)
    verified = await orchestrator.verify(sell.id)

    updated = await orchestrator.update(sell.id, SellPatch(ref_id=7))

    assert updated.ref_id == 7
    stored = await orchestrator.get(sell.id)
    assert stored.ref_id == 7
    assert stored.status is SellStatus.VERIFIED
    assert stored.username == verified.username

    with pytest.raises(RecordNotFound):
        await orchestrator.update(sell.id, SellPatch(node_id=99))
    assert (await orchestrator.get(sell.id)).node_id == node.id


@pytest.mark.asyncio
async def test_commit_failure_after_account_creation_counts_orphan(store, monkeypatch):
    factory, node, service = store
    agent = FakeNodeAgent()
    orchestrator = _orchestrator(factory, agent)
    sell = await orchestrator.create(555, service.id, node.id)

    async def failing_commit(self):
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    async def lock_database() -> None:
        monkeypatch.setattr(AsyncSession, "commit", failing_commit)

    agent.before_create = lock_database
    orphans_before = sells_module.ORPHANED_ACCOUNTS.value()

    with pytest.raises(StoreError) as exc:
        await orchestrator.verify(sell.id)

    assert exc.value.kind is StoreErrorKind.UNEXPECTED
    assert sells_module.ORPHANED_ACCOUNTS.value() == orphans_before + 1
    assert len(agent.accounts) == 1
    monkeypatch.undo()
    assert (await orchestrator.get(sell.id)).status is SellStatus.UNVERIFIED


@pytest.mark.asyncio
async def test_update_racing_verify_keeps_issued_credentials(store, monkeypatch):
    factory, node, service = store
    orchestrator = _orchestrator(factory, FakeNodeAgent())
    sell = await orchestrator.create(555, service.id, node.id)
    original_update_sell = db.update_sell
    verified = {}

    async def verify_then_update(session, sell_id, changes):
        verified["sell"] = await orchestrator.verify(sell_id)
        return await original_update_sell(session, sell_id, changes)

    monkeypatch.setattr(sells_module.db, "update_sell", verify_then_update)

    updated = await orchestrator.update(sell.id, SellPatch(ref_id=7))

    stored = await orchestrator.get(sell.id)
    assert stored.status is SellStatus.VERIFIED
    assert stored.ref_id == 7
    assert stored.username == verified["sell"].username
    assert stored.password_hash == verified["sell"].password_hash
    assert stored.firstbuy_date is not None
    assert updated == stored
