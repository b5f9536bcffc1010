"""FastAPI application exposing a node's account commands to the control plane."""

from __future__ import annotations

import asyncio
import functools
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse

from ..common.errors import AuthError, UserError, UserErrorKind
from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.responses import install_error_handlers, ok
from ..common.schemas import (
    AutoSSHUser,
    InputSSHUser,
    OnlyUser,
    UsageParams,
    UserExpDate,
    UserGrp,
    UserLookupParams,
    UserPasswd,
)
from ..common.security import NODE_AUDIENCE, Role, TokenAuthority
from ..common.settings import NodeAgentSettings, NodeConfig, load_node_config
from . import stats
from .accounts import AccountManager

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("sshmgmt_node_requests_total", "Total node agent requests"))
AUTH_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("sshmgmt_node_auth_failures_total", "Rejected node agent requests, by auth error")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "sshmgmt_node_request_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Node agent request latency",
    )
)

LOGGER = structlog.get_logger("sshmgmt.node_agent")


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: NodeAgentSettings,
        authority: TokenAuthority,
        accounts: AccountManager,
        node_config: NodeConfig,
        executor: ThreadPoolExecutor,
    ) -> None:
        self.settings = settings
        self.authority = authority
        self.accounts = accounts
        self.node_config = node_config
        self.executor = executor

    async def offload(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking call on the bounded worker pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def get_settings(state: AppState = Depends(_get_state)) -> NodeAgentSettings:
    return state.settings


def _role_guard(required: Role):
    def guard(request: Request, state: AppState = Depends(_get_state)) -> Role:
        try:
            return state.authority.authorize(request.headers.get("authorization"), required)
        except AuthError as exc:
            AUTH_FAILURE_COUNTER.inc(kind=exc.kind.value)
            raise

    return guard


require_reader = _role_guard(Role.NORMAL)
require_privileged = _role_guard(Role.PRIVILEGED)


@asynccontextmanager
async def lifespan(app: FastAPI, accounts: Optional[AccountManager] = None):
    settings = NodeAgentSettings()
    node_config = load_node_config(settings.node_config_path)
    node_info = node_config.node_info
    configure_logging("sshmgmt.node_agent", settings.log_level, node=node_info.name, location=node_info.location)
    configure_tracing(
        service_name="sshmgmt.node_agent",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
        attributes={"sshmgmt.node.name": node_info.name, "sshmgmt.node.location": node_info.location},
    )
    authority = TokenAuthority.from_secrets(settings.token_secrets, NODE_AUDIENCE)
    executor = ThreadPoolExecutor(
        max_workers=settings.worker_pool_size,
        thread_name_prefix="sshmgmt-accounts",
    )
    app.state.container = AppState(
        settings=settings,
        authority=authority,
        accounts=accounts or AccountManager.from_settings(settings),
        node_config=node_config,
        executor=executor,
    )
    LOGGER.info("node_agent_started", workers=settings.worker_pool_size)
    try:
        yield
    finally:
        executor.shutdown(wait=True)


def create_app(accounts: Optional[AccountManager] = None) -> FastAPI:
    app = FastAPI(lifespan=functools.partial(lifespan, accounts=accounts))
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
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping() -> str:
        return "pong"

    @app.get("/api/node_info")
    async def public_node_info(state: AppState = Depends(_get_state)) -> dict:
        return ok(state.node_config.node_info)

    # Read-only queries: any valid node token

    @app.get("/api/stats/ping", response_class=PlainTextResponse)
    async def stats_ping(_: Role = Depends(require_reader)) -> str:
        return "pong"

    @app.get("/api/stats/node_info")
    async def node_info(_: Role = Depends(require_reader), state: AppState = Depends(_get_state)) -> dict:
        return ok(state.node_config.node_info)

    @app.get("/api/stats/hw_stats")
    async def hw_stats(_: Role = Depends(require_reader), state: AppState = Depends(_get_state)) -> dict:
        return ok(await state.offload(stats.hw_stats))

    @app.get("/api/stats/net_stats")
    async def net_stats(_: Role = Depends(require_reader), state: AppState = Depends(_get_state)) -> dict:
        return ok(await state.offload(stats.net_stats))

    @app.post("/api/stats/list_users")
    async def list_users(
        params: UserLookupParams,
        _: Role = Depends(require_reader),
        state: AppState = Depends(_get_state),
    ) -> dict:
        if params.prefix is not None:
            users = await state.offload(state.accounts.get_users_by_prefix, params.prefix)
        else:
            users = await state.offload(state.accounts.get_users_by_group, params.group)
        return ok(users)

    @app.get("/api/stats/user_expiry/{user}")
    async def user_expiry(user: str, _: Role = Depends(require_reader), state: AppState = Depends(_get_state)) -> dict:
        return ok(await state.offload(state.accounts.get_chage_exp, user))

    @app.get("/api/stats/user_info/{user}")
    async def user_info(user: str, _: Role = Depends(require_reader), state: AppState = Depends(_get_state)) -> dict:
        info = await state.offload(state.accounts.get_user, user)
        if info is None:
            raise UserError(UserErrorKind.INVALID_USER_OR_GROUP, raw_message=f"user {user} not found")
        return ok(info)

    @app.post("/api/stats/users_usage")
    async def users_usage(
        params: UsageParams,
        _: Role = Depends(require_reader),
        state: AppState = Depends(_get_state),
    ) -> dict:
        accounts = state.accounts
        if params.prefix is not None:
            usage = await state.offload(accounts.get_usage_by_prefix, params.prefix)
        elif params.group is not None:
            usage = await state.offload(accounts.get_usage_by_group, params.group)
        else:
            usage = await state.offload(accounts.get_usage_by_name, params.username)
        return ok(usage)

    # Mutations: privileged node token only

    @app.post("/api/cmd/useradd")
    async def useradd(
        payload: InputSSHUser,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        shell = payload.shell or state.accounts.default_shell
        user = await state.offload(
            state.accounts.add,
            payload.username,
            shell,
            payload.group,
            payload.exp_date,
            payload.password,
        )
        return ok(user)

    @app.post("/api/cmd/auto_useradd")
    async def auto_useradd(
        payload: AutoSSHUser,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        user = await state.offload(
            state.accounts.auto_add,
            payload.prefix,
            payload.users_count,
            payload.group,
            payload.exp_date,
        )
        return ok(user)

    @app.post("/api/cmd/userdel")
    async def userdel(
        payload: OnlyUser,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.offload(state.accounts.userdel, payload.username))

    @app.post("/api/cmd/passwd")
    async def passwd(
        payload: UserPasswd,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.offload(state.accounts.usermod_change_pass, payload.username, payload.password))

    @app.post("/api/cmd/passwd_restore")
    async def passwd_restore(
        payload: OnlyUser,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.offload(state.accounts.restore_password, payload.username))

    @app.post("/api/cmd/chgrp")
    async def chgrp(
        payload: UserGrp,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.offload(state.accounts.usermod_change_grp, payload.username, payload.group))

    @app.post("/api/cmd/chexp")
    async def chexp(
        payload: UserExpDate,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.offload(state.accounts.usermod_change_exp, payload.username, payload.exp_date))

    @app.post("/api/cmd/userlock")
    async def userlock(
        payload: OnlyUser,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.offload(state.accounts.lock, payload.username))

    @app.post("/api/cmd/userunlock")
    async def userunlock(
        payload: OnlyUser,
        _: Role = Depends(require_privileged),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return ok(await state.offload(state.accounts.unlock, payload.username))

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        settings: NodeAgentSettings = Depends(get_settings),
    ) -> PlainTextResponse:
        token = settings.metrics_token.get_secret_value() if settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
