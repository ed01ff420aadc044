from niya.services.realtime.connections import ConnectionInfo


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_socket_health_reports_counts(client, realtime_state, make_transport):
    info = ConnectionInfo(connection_id="c1", user_id=1, transport=make_transport())
    realtime_state.registry.add("c1", info)
    realtime_state.router.join("c1", "chat-a")

    body = client.get("/chats/ws/health").json()

    assert body["status"] == "healthy"
    assert body["connections"] == 1
    assert body["activeChats"] == 1
    assert body["uptime"] >= 0
