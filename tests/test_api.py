import pytest
from httpx import ASGITransport, AsyncClient

from life_sim.main import app


def _register(client, username="ana"):
    response = client.post("/api/register", json={"username": username, "password": "secret1"})
    return response.json()["user"]["id"]


def test_health_check(client):
    assert client.get("/health").json() == {"status": "ok"}


# 测试：未登录访问受保护接口返回 401。
@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/progress"),
        ("post", "/api/progress"),
        ("get", "/api/gov"),
        ("post", "/api/gov/funds/add"),
        ("post", "/api/world/structures"),
        ("get", "/api/ledger/balance"),
        ("get", "/api/ledger/movements"),
        ("get", "/api/me"),
        ("post", "/api/logout"),
    ],
)
def test_protected_routes_require_login(client, method, path):
    response = getattr(client, method)(path, json={}) if method == "post" else client.get(path)
    assert response.status_code == 401


# 测试：POST /api/progress 只接受白名单字段，金额经账本记录并同步到在线玩家。
def test_progress_update_syncs_live_player(client):
    runtime = client.app.state.runtime
    user_id = _register(client)
    from life_sim.data_access.models import LivePlayer

    runtime.world.add(LivePlayer(id=user_id, code="ana"))

    response = client.post(
        "/api/progress",
        json={"money": 900, "vehicle": "car", "role": "admin"},
    )

    progress = response.json()["progress"]
    assert progress["money"] == 900
    assert progress["vehicle"] == "car"
    assert "role" not in progress
    assert runtime.world.get(user_id).money == 900
    assert client.get("/api/progress").json()["progress"]["money"] == 900

    balance = client.get("/api/ledger/balance").json()
    assert balance["snapshot"] == {"money": 900, "bank": 0}
    movements = client.get("/api/ledger/movements", params={"limit": 1}).json()["movements"]
    assert len(movements) == 1
    assert movements[0]["userId"] == user_id
    assert movements[0]["reason"] == "progress"


def test_government_funds(client):
    _register(client)

    assert client.get("/api/gov").json()["government"] == {"funds": 0, "placed": []}
    assert client.post("/api/gov/funds/add", json={"amount": 250.9}).json() == {"ok": True, "funds": 250}
    assert client.post("/api/gov/funds/add", json={"amount": -1000}).json() == {"ok": True, "funds": 0}
    for bad in (0, "abc", None, "inf"):
        assert client.post("/api/gov/funds/add", json={"amount": bad}).status_code == 400


def test_world_structures_round_trip(client):
    _register(client)
    payload = {
        "factories": [{"id": "F1", "x": 10, "y": 20, "w": 80, "h": 60}],
        "banks": [{"id": "K1", "x": 400, "y": 20, "w": 50, "h": 50, "label": "Central"}],
    }

    assert client.post("/api/world/structures", json=payload).json() == {"ok": True, "factories": 1, "banks": 1}
    structures = client.get("/api/world/structures").json()
    assert structures["factories"][0]["id"] == "F1"
    assert structures["banks"][0]["label"] == "Central"
    assert structures["shops"] == [] and structures["houses"] == []


# 测试：WebSocket 连接先收到 state 快照；带令牌的连接可以创建玩家并收到 ack。
def test_websocket_flow_with_token(client):
    client.post("/api/register", json={"username": "ana", "password": "secret1"})
    token = client.post("/api/login", json={"username": "ana", "password": "secret1"}).json()["access_token"]
    client.cookies.clear()

    with client.websocket_connect(f"/ws?token={token}") as ws:
        first = ws.receive_json()
        assert first["event"] == "state"
        assert set(first["data"]) == {"players", "shops", "houses", "government"}

        ws.send_text("ping")
        assert ws.receive_text() == "pong"

        ws.send_json({"event": "createPlayer", "data": {"code": "Ana"}, "ack": "a1"})
        ack = ws.receive_json()
        assert ack == {"event": "ack", "ack": "a1", "data": {"ok": True, "id": ack["data"]["id"]}}
        joined = ws.receive_json()
        assert joined["event"] == "playerJoined"
        assert joined["data"]["code"] == "Ana"

        ws.send_text("not json")
        ws.send_json({"event": "placeShop", "data": {"x": 5, "y": 5, "w": 20, "h": 20}, "ack": 2})
        placed = ws.receive_json()
        assert placed["event"] == "ack" and placed["data"]["ok"] is True

    runtime = client.app.state.runtime
    assert len(runtime.world) == 0
    assert len(runtime.registry.all_shops()) == 1


def test_anonymous_websocket_is_read_only(client):
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json()["event"] == "state"
        ws.send_json({"event": "placeHouse", "data": {"x": 1, "y": 1, "w": 9, "h": 9}, "ack": 1})
        assert ws.receive_json()["data"] == {"ok": False, "msg": "unauthenticated"}


@pytest.mark.asyncio
# 测试：不经过 lifespan 时也可直接挂载运行时，通过 httpx 异步客户端访问接口。
async def test_routes_served_from_injected_runtime(runtime):
    app.state.runtime = runtime
    transport = ASGITransport(app=app, raise_app_exceptions=True)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        register = await http.post("/api/register", json={"username": "cid", "password": "secret1"})
        assert register.status_code == 201
        login = await http.post("/api/login", json={"username": "cid", "password": "secret1"})
        headers = {"Authorization": f"Bearer {login.json()['access_token']}"}

        progress = await http.get("/api/progress", headers=headers)

    assert progress.json()["progress"]["money"] == 400
    assert runtime.profiles.has_progress(register.json()["user"]["id"])
