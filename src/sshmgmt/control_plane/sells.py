"""Sell lifecycle: record a purchase, then provision its account on a node."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..common.errors import SellAlreadyVerified, StoreError
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import Sell, SellPatch, SellStatus
from . import db
from .node_client import NodeClient

LOGGER = structlog.get_logger("sshmgmt.control_plane.sells")
TRACER = trace.get_tracer("sshmgmt.control_plane.sells")

SELLS_CREATED = GLOBAL_REGISTRY.register(Counter("sshmgmt_control_plane_sells_created_total", "Sells recorded"))
SELLS_VERIFIED = GLOBAL_REGISTRY.register(Counter("sshmgmt_control_plane_sells_verified_total", "Sells provisioned"))
ORPHANED_ACCOUNTS = GLOBAL_REGISTRY.register(
    Counter(
        "sshmgmt_control_plane_orphaned_accounts_total",
        "Node accounts created for sells that could not be marked verified",
    )
)

INVOICE_PERIOD = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SellOrchestrator:
    """Drives a sell from unverified to verified.

    Verification is not transactional across the node call and the store: if the
    node creates the account and the local update then fails, the account is left
    behind and only logged. Re-running ``verify`` is the only recovery path.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        node_client: NodeClient,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._node_client = node_client
        self._clock = clock

    async def create(
        self,
        customer_id: int,
        service_id: int,
        node_id: int,
        referrer_id: Optional[int] = None,
    ) -> Sell:
        async with self._session_factory() as session:
            customer = await db.get_customer(session, customer_id)
            await db.get_service(session, service_id)
            await db.get_node(session, node_id)
            sell = await db.insert_sell(
                session,
                user_id=customer.id,
                service_id=service_id,
                node_id=node_id,
                ref_id=referrer_id if referrer_id is not None else customer.ref_id,
            )
            await db.commit(session)
        SELLS_CREATED.inc()
        LOGGER.info("sell_created", sell_id=sell.id, user_id=customer.id, service_id=service_id, node_id=node_id)
        return sell

    async def verify(self, sell_id: int, validity_days: Optional[int] = None) -> Sell:
        with TRACER.start_as_current_span("control_plane.verify_sell", attributes={"sshmgmt.sell_id": sell_id}):
            async with self._session_factory() as session:
                sell = await db.get_sell(session, sell_id)
                if sell.status is SellStatus.VERIFIED:
                    raise SellAlreadyVerified(sell_id)
                service = await db.get_service(session, sell.service_id)
                node = await db.get_node(session, sell.node_id)

            account = await self._node_client.useradd(node, service.max_logins, sell.id, validity_days)

            now = self._clock()
            changes = {
                "firstbuy_date": now,
                "invoice_date": now + INVOICE_PERIOD,
                "username": account.username,
                "password": account.password,
                "password_hash": account.password_hash,
            }
            try:
                async with self._session_factory() as session:
                    updated = await db.mark_sell_verified(session, sell_id, **changes)
                    await db.commit(session)
            except StoreError:
                ORPHANED_ACCOUNTS.inc()
                LOGGER.error(
                    "sell_verify_orphaned_account",
                    sell_id=sell_id,
                    node_id=node.id,
                    username=account.username,
                )
                raise

            if not updated:
                ORPHANED_ACCOUNTS.inc()
                LOGGER.error(
                    "sell_verify_lost_race",
                    sell_id=sell_id,
                    node_id=node.id,
                    username=account.username,
                )
                raise SellAlreadyVerified(sell_id)

        SELLS_VERIFIED.inc()
        LOGGER.info("sell_verified", sell_id=sell_id, node_id=node.id, username=account.username)
        return sell.model_copy(update={**changes, "status": SellStatus.VERIFIED})

    async def update(self, sell_id: int, patch: SellPatch) -> Sell:
        """Apply an operator correction; the verification status is left alone."""
        async with self._session_factory() as session:
            await db.get_sell(session, sell_id)
            if patch.service_id is not None:
                await db.get_service(session, patch.service_id)
            if patch.node_id is not None:
                await db.get_node(session, patch.node_id)
            sell = await db.update_sell(session, sell_id, patch.changes())
            await db.commit(session)
        LOGGER.info("sell_updated", sell_id=sell_id, fields=sorted(patch.changes()))
        return sell

    async def get(self, sell_id: int) -> Sell:
        async with self._session_factory() as session:
            return await db.get_sell(session, sell_id)

    async def list_sells(self, *, ref_id: Optional[int] = None, user_id: Optional[int] = None) -> list[Sell]:
        async with self._session_factory() as session:
            return await db.list_sells(session, ref_id=ref_id, user_id=user_id)
