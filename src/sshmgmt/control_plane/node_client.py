"""HTTP client the control plane uses to drive node agents."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional
from urllib.parse import urlsplit

import httpx
import structlog
from opentelemetry import trace

from ..common.credentials import (
    DEFAULT_VALIDITY_DAYS,
    derive_group,
    derive_username,
    exp_date_after,
    generate_password,
)
from ..common.errors import (
    InvalidNodeAddress,
    NodeResponseError,
    TransportError,
    TransportErrorKind,
    error_from_payload,
)
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import InputSSHUser, Node, ProvisionedAccount, SSHUser

LOGGER = structlog.get_logger("sshmgmt.control_plane.node_client")
TRACER = trace.get_tracer("sshmgmt.control_plane.node_client")

NODE_REQUEST_FAILURES = GLOBAL_REGISTRY.register(
    Counter("sshmgmt_control_plane_node_request_failures_total", "Failed node agent calls, by error kind")
)

DEFAULT_NODE_PORT = 8010

NODE_INFO_PATH = "/api/stats/node_info"
HW_STATS_PATH = "/api/stats/hw_stats"
NET_STATS_PATH = "/api/stats/net_stats"
USERADD_PATH = "/api/cmd/useradd"

_ALLOWED_SCHEMES = {"http", "https"}


def normalize_node_address(address: str) -> str:
    """Reduce a node address to ``scheme://host:port``; only http and https are accepted."""
    try:
        parts = urlsplit(address.strip())
        port = parts.port
    except ValueError as exc:
        raise InvalidNodeAddress("node-api's address is not a valid URL", address) from exc
    if not parts.scheme or not parts.hostname:
        raise InvalidNodeAddress("node-api's address is not a valid URL", address)
    scheme = parts.scheme.lower()
    if scheme not in _ALLOWED_SCHEMES:
        raise InvalidNodeAddress("node-api's address should be over HTTP or HTTPS protocols", address)
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    return f"{scheme}://{host}:{port or DEFAULT_NODE_PORT}"


def build_account_request(
    max_logins: int,
    subject_id: int,
    days: Optional[int] = None,
    *,
    today: Optional[date] = None,
) -> InputSSHUser:
    """Fresh credentials for one sell; the node applies its default shell."""
    return InputSSHUser(
        username=derive_username(max_logins, subject_id),
        password=generate_password(),
        exp_date=exp_date_after(days or DEFAULT_VALIDITY_DAYS, today),
        group=derive_group(max_logins),
        shell=None,
    )


class NodeClient:
    """Authenticated calls to a node's command surface. No retries."""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    async def _request(self, method: str, node: Node, path: str, payload: Optional[dict] = None) -> Any:
        base_url = normalize_node_address(node.address)
        headers = {"Authorization": f"Bearer {node.token}"}
        try:
            response = await self._http.request(method, f"{base_url}{path}", headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise self._transport_failure(TransportErrorKind.TIMEOUT, node, path, exc) from exc
        except httpx.ConnectError as exc:
            raise self._transport_failure(TransportErrorKind.CONNECTION_REFUSED, node, path, exc) from exc
        except httpx.RequestError as exc:
            raise self._transport_failure(TransportErrorKind.REQUEST_ERROR, node, path, exc) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise self._transport_failure(TransportErrorKind.UNEXPECTED, node, path, exc) from exc

        if isinstance(body, dict) and "Err" in body:
            error = error_from_payload(response.status_code, body["Err"])
            NODE_REQUEST_FAILURES.inc(kind=error.error_type)
            LOGGER.warning(
                "node_request_rejected",
                node_id=node.id,
                path=path,
                status=response.status_code,
                error_type=error.error_type,
                code=error.code,
            )
            raise error
        if isinstance(body, dict) and "Ok" in body:
            return body["Ok"]
        if response.is_error:
            NODE_REQUEST_FAILURES.inc(kind="node")
            raise NodeResponseError(response.status_code, body)
        return body

    def _transport_failure(
        self,
        kind: TransportErrorKind,
        node: Node,
        path: str,
        exc: Exception,
    ) -> TransportError:
        NODE_REQUEST_FAILURES.inc(kind=kind.value)
        LOGGER.warning("node_request_failed", node_id=node.id, path=path, kind=kind.value, error=str(exc))
        return TransportError(kind, raw_message=str(exc) or type(exc).__name__)

    async def node_info(self, node: Node) -> Any:
        return await self._request("GET", node, NODE_INFO_PATH)

    async def hw_stats(self, node: Node) -> Any:
        return await self._request("GET", node, HW_STATS_PATH)

    async def net_stats(self, node: Node) -> Any:
        return await self._request("GET", node, NET_STATS_PATH)

    async def useradd(
        self,
        node: Node,
        max_logins: int,
        subject_id: int,
        days: Optional[int] = None,
    ) -> ProvisionedAccount:
        request = build_account_request(max_logins, subject_id, days)
        with TRACER.start_as_current_span(
            "control_plane.node_useradd",
            attributes={"sshmgmt.node_id": node.id, "sshmgmt.username": request.username},
        ):
            body = await self._request("POST", node, USERADD_PATH, request.model_dump())
        try:
            user = SSHUser.model_validate(body)
        except ValueError as exc:
            raise TransportError(TransportErrorKind.UNEXPECTED, raw_message=str(exc)) from exc
        LOGGER.info("node_account_created", node_id=node.id, username=user.username, exp_date=user.exp_date)
        return ProvisionedAccount(
            username=user.username,
            password=request.password,
            password_hash=user.password_hash,
            usergroup=user.usergroup,
            exp_date=user.exp_date,
        )
