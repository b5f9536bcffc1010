from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio

from sshmgmt.common.credentials import verify_password
from sshmgmt.common.security import NODE_AUDIENCE, OPERATOR_AUDIENCE, Role, TokenAuthority
from sshmgmt.node_agent import app as node_app

NODE_SECRET = "node-secret"


def _auth(role: Role, *, secret: str = NODE_SECRET, audience: str = NODE_AUDIENCE) -> dict[str, str]:
    token = TokenAuthority(secret=secret, audience=audience).issue(role)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(tmp_path, monkeypatch, accounts):
    config_path = tmp_path / "sshmgmt_config.json"
    config_path.write_text(json.dumps({"node_info": {"name": "fra-1", "location": "Frankfurt", "capacity": 100}}))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SSHMGMT_NODE_TOKEN_SECRET", NODE_SECRET)
    monkeypatch.setenv("SSHMGMT_NODE_TOKEN_SECRET_FALLBACKS", "retired-secret")
    monkeypatch.setenv("SSHMGMT_PASSWORD_SALT", "test-salt")
    monkeypatch.setenv("SSHMGMT_NODE_CONFIG", str(config_path))
    monkeypatch.setenv("SSHMGMT_WORKER_POOL_SIZE", "4")
    monkeypatch.delenv("SSHMGMT_METRICS_TOKEN", raising=False)

    app = node_app.create_app(accounts=accounts)
    lifespan = app.router.lifespan_context(app)
    await lifespan.__aenter__()
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
            yield http_client
    finally:
        await lifespan.__aexit__(None, None, None)


@pytest.mark.asyncio
async def test_ping_and_public_node_info(client):
    ping = await client.get("/ping")
    assert ping.status_code == 200
    assert ping.text == "pong"

    info = await client.get("/api/node_info")
    assert info.status_code == 200
    assert info.json() == {"Ok": {"name": "fra-1", "location": "Frankfurt", "capacity": 100}}


@pytest.mark.asyncio
async def test_stats_require_a_token(client):
    missing = await client.get("/api/stats/node_info")
    assert missing.status_code == 401
    assert missing.json()["Err"]["type"] == "auth"
    assert missing.json()["Err"]["code"] == "Missing"

    invalid = await client.get("/api/stats/node_info", headers={"Authorization": "Bearer not-a-jwt"})
    assert invalid.status_code == 401
    assert invalid.json()["Err"]["code"] == "Invalid"

    normal = await client.get("/api/stats/node_info", headers=_auth(Role.NORMAL))
    assert normal.status_code == 200
    assert normal.json()["Ok"]["name"] == "fra-1"

    pong = await client.get("/api/stats/ping", headers=_auth(Role.NORMAL))
    assert pong.text == "pong"


@pytest.mark.asyncio
async def test_tokens_from_other_deployment_are_rejected(client):
    response = await client.get(
        "/api/stats/node_info",
        headers=_auth(Role.PRIVILEGED, secret="operator-secret", audience=OPERATOR_AUDIENCE),
    )
    assert response.status_code == 401

    same_secret = await client.get(
        "/api/stats/node_info",
        headers=_auth(Role.PRIVILEGED, audience=OPERATOR_AUDIENCE),
    )
    assert same_secret.status_code == 401


@pytest.mark.asyncio
async def test_retired_secret_from_settings_still_accepted(client):
    response = await client.get("/api/stats/node_info", headers=_auth(Role.NORMAL, secret="retired-secret"))
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_hw_and_net_stats(client, monkeypatch):
    monkeypatch.setattr(node_app.stats, "hw_stats", lambda: {"cpu_load": [0.1, 0.2, 0.3]})
    monkeypatch.setattr(node_app.stats, "net_stats", lambda: [{"interface": "eth0"}])

    hw = await client.get("/api/stats/hw_stats", headers=_auth(Role.NORMAL))
    assert hw.json() == {"Ok": {"cpu_load": [0.1, 0.2, 0.3]}}
    net = await client.get("/api/stats/net_stats", headers=_auth(Role.NORMAL))
    assert net.json() == {"Ok": [{"interface": "eth0"}]}


@pytest.mark.asyncio
async def test_normal_token_cannot_mutate(client, shadow):
    payload = {"username": "sshmgmt3x001", "password": "pw", "exp_date": "2030-01-01", "group": "grp3"}
    response = await client.post("/api/cmd/useradd", json=payload, headers=_auth(Role.NORMAL))

    assert response.status_code == 403
    assert response.json()["Err"] == {
        "type": "auth",
        "code": "Forbidden",
        "msg": "Authentication Failed",
        "raw_msg": "privileged role required",
    }
    assert shadow.calls == []


@pytest.mark.asyncio
async def test_useradd_applies_default_shell(client, shadow):
    payload = {"username": "sshmgmt3x001", "password": "SSHMGMTKIT_00042", "exp_date": "2030-01-01", "group": "grp3"}
    response = await client.post("/api/cmd/useradd", json=payload, headers=_auth(Role.PRIVILEGED))

    assert response.status_code == 200
    user = response.json()["Ok"]
    assert user["username"] == "sshmgmt3x001"
    assert user["shell"] == "/bin/rbash"
    assert user["usergroup"] == "grp3"
    assert verify_password("SSHMGMTKIT_00042", user["password_hash"])
    assert "sshmgmt3x001" in shadow.users


@pytest.mark.asyncio
async def test_useradd_duplicate_is_conflict(client, shadow):
    shadow.seed("sshmgmt3x001", group="grp3")
    payload = {"username": "sshmgmt3x001", "password": "pw", "exp_date": "2030-01-01", "group": "grp3"}

    response = await client.post("/api/cmd/useradd", json=payload, headers=_auth(Role.PRIVILEGED))

    assert response.status_code == 409
    err = response.json()["Err"]
    assert err["type"] == "user"
    assert err["code"] == "UserAlreadyExists"


@pytest.mark.asyncio
async def test_useradd_invalid_expiry(client):
    payload = {"username": "sshmgmt3x001", "password": "pw", "exp_date": "tomorrow", "group": "grp3"}
    response = await client.post("/api/cmd/useradd", json=payload, headers=_auth(Role.PRIVILEGED))
    assert response.status_code == 422
    assert response.json()["Err"]["code"] == "InvalidExpDate"


@pytest.mark.asyncio
async def test_useradd_overlong_password(client, shadow):
    payload = {"username": "sshmgmt3x001", "password": "p" * 100, "exp_date": "2030-01-01", "group": "grp3"}
    response = await client.post("/api/cmd/useradd", json=payload, headers=_auth(Role.PRIVILEGED))
    assert response.status_code == 422
    assert response.json()["Err"]["code"] == "InvalidPasswordHash"
    assert shadow.calls == []


@pytest.mark.asyncio
async def test_malformed_body_uses_error_envelope(client):
    response = await client.post("/api/cmd/userdel", json={}, headers=_auth(Role.PRIVILEGED))
    assert response.status_code == 422
    err = response.json()["Err"]
    assert err["type"] == "request"
    assert "username" in err["raw_msg"]


@pytest.mark.asyncio
async def test_account_lifecycle(client, shadow):
    headers = _auth(Role.PRIVILEGED)
    await client.post(
        "/api/cmd/auto_useradd",
        json={"prefix": "trial", "users_count": 0, "exp_date": "2030-01-01", "group": "grp1"},
        headers=headers,
    )
    assert "trial1" in shadow.users

    passwd = await client.post("/api/cmd/passwd", json={"username": "trial1", "password": "fresh"}, headers=headers)
    assert passwd.json()["Ok"]["password"] == "fresh"

    restored = await client.post("/api/cmd/passwd_restore", json={"username": "trial1"}, headers=headers)
    assert restored.json()["Ok"]["password"].startswith("SSHMGMTKIT_")

    chgrp = await client.post("/api/cmd/chgrp", json={"username": "trial1", "group": "grp2"}, headers=headers)
    assert chgrp.json()["Ok"]["group"] == "grp2"

    chexp = await client.post("/api/cmd/chexp", json={"username": "trial1", "exp_date": "2031-02-03"}, headers=headers)
    assert chexp.json()["Ok"]["exp_date"] == "2031-02-03"

    lock = await client.post("/api/cmd/userlock", json={"username": "trial1"}, headers=headers)
    assert lock.json()["Ok"]["status"] == "user trial1 successfully locked"
    unlock = await client.post("/api/cmd/userunlock", json={"username": "trial1"}, headers=headers)
    assert unlock.json()["Ok"]["status"] == "user trial1 successfully unlocked"

    expiry = await client.get("/api/stats/user_expiry/trial1", headers=_auth(Role.NORMAL))
    assert expiry.json() == {"Ok": {"username": "trial1", "exp_date": "2031-02-03"}}

    info = await client.get("/api/stats/user_info/trial1", headers=_auth(Role.NORMAL))
    assert info.json()["Ok"]["usergroup"] == [shadow.groups["grp2"], "grp2"]

    deleted = await client.post("/api/cmd/userdel", json={"username": "trial1"}, headers=headers)
    assert deleted.json()["Ok"]["status"] == "user trial1 successfully deleted"
    assert "trial1" not in shadow.users


@pytest.mark.asyncio
async def test_user_queries_for_missing_user(client):
    expiry = await client.get("/api/stats/user_expiry/ghost", headers=_auth(Role.NORMAL))
    assert expiry.status_code == 422
    assert expiry.json()["Err"]["code"] == "InvalidUserOrGroup"

    info = await client.get("/api/stats/user_info/ghost", headers=_auth(Role.NORMAL))
    assert info.status_code == 422


@pytest.mark.asyncio
async def test_list_users_and_usage(client, shadow, trace_file):
    shadow.seed("sshmgmt3x1", group="grp3")
    shadow.seed("sshmgmt1x2", group="grp1")
    trace_file.write_text("sshd: sshmgmt3x1@pts/0/4242/1001\t1.5\t1.5\n")
    headers = _auth(Role.NORMAL)

    by_prefix = await client.post("/api/stats/list_users", json={"prefix": "sshmgmt3"}, headers=headers)
    assert by_prefix.json() == {"Ok": ["sshmgmt3x1"]}
    by_group = await client.post("/api/stats/list_users", json={"group": "grp1"}, headers=headers)
    assert by_group.json() == {"Ok": ["sshmgmt1x2"]}
    no_filter = await client.post("/api/stats/list_users", json={}, headers=headers)
    assert no_filter.status_code == 422

    usage = await client.post("/api/stats/users_usage", json={"group": "grp3"}, headers=headers)
    assert usage.json() == {"Ok": {"sshmgmt3x1": 3.0}}
    by_name = await client.post("/api/stats/users_usage", json={"username": "sshmgmt1x2"}, headers=headers)
    assert by_name.json() == {"Ok": {"sshmgmt1x2": 0.0}}


@pytest.mark.asyncio
async def test_metrics_endpoint_from_loopback(client):
    await client.get("/ping")
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "sshmgmt_node_requests_total" in response.text
