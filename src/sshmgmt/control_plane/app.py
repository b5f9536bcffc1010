"""FastAPI application providing the sshmgmt control plane APIs."""

from __future__ import annotations

import hmac
import time
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy import text

from ..common.credentials import hash_password, is_valid_username, verify_password
from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.responses import install_error_handlers, ok
from ..common.schemas import (
    AccountInfo,
    LoginInfo,
    NewCustomer,
    NewNode,
    NewSell,
    NewService,
    NodePatch,
    RegisterInfo,
    SellPatch,
    ServicePatch,
    TokenResponse,
)
from ..common.security import OPERATOR_AUDIENCE, Role, TokenAuthority
from ..common.settings import ControlPlaneSettings
from . import db
from .node_client import NodeClient, normalize_node_address
from .sells import SellOrchestrator

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("sshmgmt_control_plane_requests_total", "Total control plane requests"))
LOGIN_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("sshmgmt_control_plane_login_failures_total", "Rejected operator logins")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "sshmgmt_control_plane_request_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Control plane request latency",
    )
)

LOGGER = structlog.get_logger("sshmgmt.control_plane")


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: ControlPlaneSettings,
        session_factory,
        http_client: httpx.AsyncClient,
        node_client: NodeClient,
        orchestrator: SellOrchestrator,
        authority: TokenAuthority,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.http_client = http_client
        self.node_client = node_client
        self.orchestrator = orchestrator
        self.authority = authority


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def get_settings(state: AppState = Depends(_get_state)) -> ControlPlaneSettings:
    return state.settings


def verify_operator_token(request: Request, state: AppState = Depends(_get_state)) -> Role:
    return state.authority.authorize(request.headers.get("authorization"), Role.NORMAL)


def verify_admin_token(request: Request, state: AppState = Depends(_get_state)) -> Role:
    return state.authority.authorize(request.headers.get("authorization"), Role.PRIVILEGED)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = ControlPlaneSettings()
    configure_logging("sshmgmt.control_plane", settings.log_level)
    configure_tracing(
        service_name="sshmgmt.control_plane",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    engine = db.create_engine(settings.database_url)
    await db.ensure_schema(engine)
    session_factory = db.session_factory(engine)
    http_client = httpx.AsyncClient()
    node_client = NodeClient(http_client)
    authority = TokenAuthority.from_secrets(settings.jwt_secrets, OPERATOR_AUDIENCE)
    app.state.container = AppState(
        settings=settings,
        session_factory=session_factory,
        http_client=http_client,
        node_client=node_client,
        orchestrator=SellOrchestrator(session_factory, node_client),
        authority=authority,
    )
    try:
        yield
    finally:
        await http_client.aclose()
        await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    install_error_handlers(app)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_request_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)

        return response

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping() -> str:
        return "pong"

    @app.get("/nodes/ping", response_class=PlainTextResponse)
    async def nodes_ping() -> str:
        return "pong"

    # Nodes

    @app.get("/nodes/nodes_list")
    async def nodes_list(_: Role = Depends(verify_operator_token), state: AppState = Depends(_get_state)) -> dict:
        async with state.session_factory() as session:
            return ok(await db.list_nodes(session))

    @app.get("/nodes/get_node/{node_id}")
    async def get_node(
        node_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            return ok(await db.get_node(session, node_id))

    @app.post("/nodes/new_node", status_code=status.HTTP_201_CREATED)
    async def new_node(
        payload: NewNode,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        payload = payload.model_copy(update={"address": normalize_node_address(payload.address)})
        async with state.session_factory() as session:
            node = await db.insert_node(session, payload)
            await db.commit(session)
        LOGGER.info("node_registered", node_id=node.id, address=node.address)
        return ok(node)

    @app.post("/nodes/update_node/{node_id}", status_code=status.HTTP_201_CREATED)
    async def update_node(
        node_id: int,
        patch: NodePatch,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        if patch.address is not None:
            patch = patch.model_copy(update={"address": normalize_node_address(patch.address)})
        async with state.session_factory() as session:
            node = patch.merge_into(await db.get_node(session, node_id))
            await db.update_node(session, node)
            await db.commit(session)
        return ok(node)

    @app.post("/nodes/delete_node/{node_id}")
    async def delete_node(
        node_id: int,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            deleted = await db.delete_node(session, node_id)
            await db.commit(session)
        return ok({"node_id": node_id, "status": "deleted" if deleted else "node doesn't exist"})

    @app.get("/nodes/node_info/{node_id}")
    async def node_info(
        node_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            node = await db.get_node(session, node_id)
        return ok(await state.node_client.node_info(node))

    @app.get("/nodes/hw_stats/{node_id}")
    async def hw_stats(
        node_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            node = await db.get_node(session, node_id)
        return ok(await state.node_client.hw_stats(node))

    @app.get("/nodes/net_stats/{node_id}")
    async def net_stats(
        node_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            node = await db.get_node(session, node_id)
        return ok(await state.node_client.net_stats(node))

    # Services

    @app.post("/services/new_service", status_code=status.HTTP_201_CREATED)
    async def new_service(
        payload: NewService,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            service = await db.insert_service(session, payload)
            await db.commit(session)
        return ok(service)

    @app.post("/services/update_service/{service_id}", status_code=status.HTTP_201_CREATED)
    async def update_service(
        service_id: int,
        patch: ServicePatch,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            service = patch.merge_into(await db.get_service(session, service_id))
            await db.update_service(session, service)
            await db.commit(session)
        return ok(service)

    @app.post("/services/delete_service/{service_id}")
    async def delete_service(
        service_id: int,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            deleted = await db.delete_service(session, service_id)
            await db.commit(session)
        return ok({"service_id": service_id, "status": "deleted" if deleted else "service doesn't exist"})

    @app.get("/services/services_list")
    async def services_list(_: Role = Depends(verify_operator_token), state: AppState = Depends(_get_state)) -> dict:
        async with state.session_factory() as session:
            return ok(await db.list_services(session))

    @app.get("/services/get_service/{service_id}")
    async def get_service(
        service_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            return ok(await db.get_service(session, service_id))

    # Customers

    @app.post("/users/new_user", status_code=status.HTTP_201_CREATED)
    async def new_user(
        payload: NewCustomer,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            if await db.find_customer(session, payload.id) is not None:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="ignore: user exists")
            customer = await db.insert_customer(session, payload)
            await db.commit(session)
        return ok(customer)

    @app.get("/users/users_list")
    async def users_list(_: Role = Depends(verify_operator_token), state: AppState = Depends(_get_state)) -> dict:
        async with state.session_factory() as session:
            return ok(await db.list_customers(session))

    @app.get("/users/user_refs/{user_id}")
    async def user_refs(
        user_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        async with state.session_factory() as session:
            return ok(await db.list_customers(session, ref_id=user_id))

    # Sells

    @app.post("/sells/new_sell", status_code=status.HTTP_201_CREATED)
    async def new_sell(
        payload: NewSell,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        sell = await state.orchestrator.create(
            payload.user_id,
            payload.service_id,
            payload.node_id,
            referrer_id=payload.ref_id,
        )
        return ok(sell)

    @app.post("/sells/verify_sell/{sell_id}")
    async def verify_sell(
        sell_id: int,
        account: AccountInfo | None = None,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        days = account.days if account is not None else None
        return ok(await state.orchestrator.verify(sell_id, days))

    @app.post("/sells/update_sell/{sell_id}", status_code=status.HTTP_201_CREATED)
    async def update_sell(
        sell_id: int,
        patch: SellPatch,
        _: Role = Depends(verify_admin_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.orchestrator.update(sell_id, patch))

    @app.get("/sells/sell_info/{sell_id}")
    async def sell_info(
        sell_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.orchestrator.get(sell_id))

    @app.get("/sells/sells_list")
    async def sells_list(_: Role = Depends(verify_operator_token), state: AppState = Depends(_get_state)) -> dict:
        return ok(await state.orchestrator.list_sells())

    @app.get("/sells/sells_list_by_ref/{ref_id}")
    async def sells_list_by_ref(
        ref_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.orchestrator.list_sells(ref_id=ref_id))

    @app.get("/sells/sells_list_by_user/{user_id}")
    async def sells_list_by_user(
        user_id: int,
        _: Role = Depends(verify_operator_token),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.orchestrator.list_sells(user_id=user_id))

    # Operator auth

    @app.post("/auth/register", status_code=status.HTTP_201_CREATED)
    async def register(payload: RegisterInfo, state: AppState = Depends(_get_state)) -> dict:
        admin_key = state.settings.admin_key.get_secret_value()
        if not hmac.compare_digest(payload.admin_key.encode("utf-8"), admin_key.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid admin_key")
        if not is_valid_username(payload.username):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid username")
        try:
            password_hash = hash_password(payload.password)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        async with state.session_factory() as session:
            if await db.get_login_credentials(session, payload.username) is not None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user already exist")
            login = await db.insert_login(
                session,
                username=payload.username,
                password_hash=password_hash,
                admin=payload.admin,
            )
            await db.commit(session)
        LOGGER.info("operator_registered", username=login.username, admin=login.admin)
        return ok(login)

    @app.post("/auth/login", status_code=status.HTTP_201_CREATED)
    async def login(payload: LoginInfo, state: AppState = Depends(_get_state)) -> dict:
        async with state.session_factory() as session:
            row = await db.get_login_credentials(session, payload.username)
        if row is None or not verify_password(payload.password, row["password_hash"]):
            LOGIN_FAILURE_COUNTER.inc()
            LOGGER.warning("operator_login_rejected", username=payload.username)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid username or password")
        role = Role.PRIVILEGED if row["admin"] else Role.NORMAL
        return ok(TokenResponse(token=state.authority.issue(role), role=role.value))

    @app.post("/auth/verify_token")
    async def verify_token(role: Role = Depends(verify_operator_token)) -> dict:
        return ok({"role": role.value})

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        settings: ControlPlaneSettings = Depends(get_settings),
    ) -> PlainTextResponse:
        token = settings.metrics_token.get_secret_value() if settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: AppState = Depends(_get_state)) -> dict:
        try:
            async with state.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            LOGGER.warning("health_check_failed", error=str(exc))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="database unavailable") from exc
        return {"status": "healthy", "checks": {"database": "ok"}}

    return app
