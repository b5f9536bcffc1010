"""Async database helpers for the sshmgmt control plane."""

from __future__ import annotations

import functools
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..common.errors import RecordNotFound, StoreError, StoreErrorKind
from ..common.schemas import (
    Customer,
    Login,
    NewCustomer,
    NewNode,
    NewService,
    Node,
    Sell,
    SellStatus,
    Service,
)


metadata = MetaData()


nodes_table = Table(
    "nodes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("address", Text, nullable=False),
    Column("token", Text, nullable=False),
    Column("status", Integer, nullable=False, default=0),
)


services_table = Table(
    "services",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("max_logins", Integer, nullable=False),
    Column("max_traffic", Integer, nullable=True),
    Column("price", Integer, nullable=False),
    Column("available", Boolean, nullable=False, default=True),
)


users_table = Table(
    "users",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("ref_id", BigInteger, nullable=True),
    Column("register_date", DateTime(timezone=True), nullable=False),
)


sells_table = Table(
    "sells",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", BigInteger, ForeignKey("users.id"), nullable=False),
    Column("ref_id", BigInteger, nullable=True),
    Column("service_id", Integer, ForeignKey("services.id"), nullable=False),
    Column("node_id", Integer, ForeignKey("nodes.id"), nullable=False),
    Column("firstbuy_date", DateTime(timezone=True), nullable=True),
    Column("invoice_date", DateTime(timezone=True), nullable=True),
    Column("username", Text, nullable=True),
    Column("password", Text, nullable=True),
    Column("password_hash", Text, nullable=True),
    Column("status", String(length=16), nullable=False, default=SellStatus.UNVERIFIED.value),
)


logins_table = Table(
    "logins",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(length=64), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("admin", Boolean, nullable=False, default=False),
    Column("register_date", DateTime(timezone=True), nullable=False),
)


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {
        "future": True,
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.get_backend_name() != "sqlite":
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_timeout": 30,
                "pool_recycle": 1800,
            }
        )
    return create_async_engine(database_url, **engine_kwargs)


async def ensure_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


ResultT = TypeVar("ResultT")


def _store_call(func: Callable[..., Awaitable[ResultT]]) -> Callable[..., Awaitable[ResultT]]:
    """Classify driver failures as ``StoreError(Unexpected)``; ``RecordNotFound`` passes through."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> ResultT:
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise StoreError(StoreErrorKind.UNEXPECTED, raw_message=str(exc)) from exc

    return wrapper


@_store_call
async def commit(session: AsyncSession) -> None:
    await session.commit()


async def _fetch_one(session: AsyncSession, table: Table, record_id: int, entity: str) -> dict:
    result = await session.execute(select(table).where(table.c.id == record_id))
    row = result.mappings().first()
    if row is None:
        raise RecordNotFound(entity, record_id)
    return dict(row)


async def _delete(session: AsyncSession, table: Table, record_id: int) -> bool:
    result = await session.execute(delete(table).where(table.c.id == record_id))
    return result.rowcount > 0


# Nodes


@_store_call
async def insert_node(session: AsyncSession, node: NewNode) -> Node:
    result = await session.execute(insert(nodes_table).values(**node.model_dump()))
    return Node(id=result.inserted_primary_key[0], **node.model_dump())


@_store_call
async def get_node(session: AsyncSession, node_id: int) -> Node:
    return Node(**await _fetch_one(session, nodes_table, node_id, "node"))


@_store_call
async def list_nodes(session: AsyncSession) -> list[Node]:
    result = await session.execute(select(nodes_table).order_by(nodes_table.c.id))
    return [Node(**row) for row in result.mappings()]


@_store_call
async def update_node(session: AsyncSession, node: Node) -> Node:
    values = node.model_dump(exclude={"id"})
    result = await session.execute(update(nodes_table).where(nodes_table.c.id == node.id).values(**values))
    if result.rowcount == 0:
        raise RecordNotFound("node", node.id)
    return node


@_store_call
async def delete_node(session: AsyncSession, node_id: int) -> bool:
    return await _delete(session, nodes_table, node_id)


# Services


@_store_call
async def insert_service(session: AsyncSession, service: NewService) -> Service:
    result = await session.execute(insert(services_table).values(**service.model_dump()))
    return Service(id=result.inserted_primary_key[0], **service.model_dump())


@_store_call
async def get_service(session: AsyncSession, service_id: int) -> Service:
    return Service(**await _fetch_one(session, services_table, service_id, "service"))


@_store_call
async def list_services(session: AsyncSession) -> list[Service]:
    result = await session.execute(select(services_table).order_by(services_table.c.id))
    return [Service(**row) for row in result.mappings()]


@_store_call
async def update_service(session: AsyncSession, service: Service) -> Service:
    values = service.model_dump(exclude={"id"})
    result = await session.execute(
        update(services_table).where(services_table.c.id == service.id).values(**values)
    )
    if result.rowcount == 0:
        raise RecordNotFound("service", service.id)
    return service


@_store_call
async def delete_service(session: AsyncSession, service_id: int) -> bool:
    return await _delete(session, services_table, service_id)


# Customers


@_store_call
async def insert_customer(session: AsyncSession, customer: NewCustomer) -> Customer:
    await session.execute(insert(users_table).values(**customer.model_dump()))
    return Customer(**customer.model_dump())


@_store_call
async def find_customer(session: AsyncSession, customer_id: int) -> Optional[Customer]:
    result = await session.execute(select(users_table).where(users_table.c.id == customer_id))
    row = result.mappings().first()
    return Customer(**row) if row is not None else None


@_store_call
async def get_customer(session: AsyncSession, customer_id: int) -> Customer:
    return Customer(**await _fetch_one(session, users_table, customer_id, "user"))


@_store_call
async def list_customers(session: AsyncSession, ref_id: Optional[int] = None) -> list[Customer]:
    stmt = select(users_table).order_by(users_table.c.id)
    if ref_id is not None:
        stmt = stmt.where(users_table.c.ref_id == ref_id)
    result = await session.execute(stmt)
    return [Customer(**row) for row in result.mappings()]


# Sells


@_store_call
async def insert_sell(
    session: AsyncSession,
    *,
    user_id: int,
    service_id: int,
    node_id: int,
    ref_id: Optional[int] = None,
) -> Sell:
    values = {
        "user_id": user_id,
        "ref_id": ref_id,
        "service_id": service_id,
        "node_id": node_id,
        "status": SellStatus.UNVERIFIED.value,
    }
    result = await session.execute(insert(sells_table).values(**values))
    return Sell(id=result.inserted_primary_key[0], **values)


@_store_call
async def get_sell(session: AsyncSession, sell_id: int) -> Sell:
    return Sell(**await _fetch_one(session, sells_table, sell_id, "sell"))


@_store_call
async def list_sells(
    session: AsyncSession,
    *,
    ref_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> list[Sell]:
    stmt = select(sells_table).order_by(sells_table.c.id)
    if ref_id is not None:
        stmt = stmt.where(sells_table.c.ref_id == ref_id)
    if user_id is not None:
        stmt = stmt.where(sells_table.c.user_id == user_id)
    result = await session.execute(stmt)
    return [Sell(**row) for row in result.mappings()]


@_store_call
async def update_sell(session: AsyncSession, sell_id: int, changes: dict[str, Any]) -> Sell:
    """Write only the given columns; status is never touched here."""
    values = {key: value for key, value in changes.items() if key not in ("id", "status")}
    if values:
        result = await session.execute(update(sells_table).where(sells_table.c.id == sell_id).values(**values))
        if result.rowcount == 0:
            raise RecordNotFound("sell", sell_id)
    return Sell(**await _fetch_one(session, sells_table, sell_id, "sell"))


@_store_call
async def mark_sell_verified(
    session: AsyncSession,
    sell_id: int,
    *,
    firstbuy_date: datetime,
    invoice_date: datetime,
    username: str,
    password: str,
    password_hash: str,
) -> bool:
    """
    Record issued credentials and flip the sell to verified.
    Only succeeds if the sell is still unverified; returns False otherwise.
    """
    stmt = (
        update(sells_table)
        .where(
            and_(
                sells_table.c.id == sell_id,
                sells_table.c.status == SellStatus.UNVERIFIED.value,
            )
        )
        .values(
            firstbuy_date=firstbuy_date,
            invoice_date=invoice_date,
            username=username,
            password=password,
            password_hash=password_hash,
            status=SellStatus.VERIFIED.value,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount > 0


# Operator logins


@_store_call
async def insert_login(session: AsyncSession, *, username: str, password_hash: str, admin: bool = False) -> Login:
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(logins_table).values(
            username=username,
            password_hash=password_hash,
            admin=admin,
            register_date=now,
        )
    )
    return Login(id=result.inserted_primary_key[0], username=username, admin=admin, register_date=now)


@_store_call
async def get_login_credentials(session: AsyncSession, username: str) -> Optional[dict]:
    """Login row including its password hash, or None."""
    result = await session.execute(select(logins_table).where(logins_table.c.username == username))
    row = result.mappings().first()
    return dict(row) if row is not None else None
