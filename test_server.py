"""
Tests for the key directory server API.
"""

import pytest
from fastapi.testclient import TestClient

from seal.primitives import b64encode
from sealserver.auth import create_access_token, verify_token
from sealserver.config import ServerSettings
from sealserver.main import create_app


@pytest.fixture
def config(tmp_path) -> ServerSettings:
    return ServerSettings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'server.db'}", secret_key="test-secret")


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as test_client:
        yield test_client


def register(client, username, password="pw"):
    response = client.post("/api/register", json={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_token_round_trip(config):
    token = create_access_token({"sub": "alice"}, config=config)

    assert verify_token(token, config) == "alice"
    assert verify_token(token, ServerSettings(secret_key="other")) is None
    assert verify_token("not.a.token", config) is None


def test_register_and_login(client):
    register(client, "alice", "secret")

    assert client.post("/api/register", json={"username": "alice", "password": "x"}).status_code == 400
    assert client.post("/api/login", json={"username": "alice", "password": "wrong"}).status_code == 401

    response = client.post("/api/login", json={"username": "alice", "password": "secret"})
    assert response.status_code == 200
    assert response.json()["username"] == "alice"
    assert response.json()["token_type"] == "bearer"

    assert client.get("/api/users").json() == {"users": ["alice"]}


def test_public_key_directory(client, alice, bob):
    headers = register(client, "alice")
    register(client, "bob")
    encoded = b64encode(alice.public_key)

    assert client.get("/api/keys/alice").status_code == 404
    assert client.put("/api/keys/alice", json={"public_key": encoded}).status_code == 401
    assert client.put("/api/keys/bob", json={"public_key": encoded}, headers=headers).status_code == 403
    assert client.put("/api/keys/alice", json={"public_key": "bm90IGEga2V5"}, headers=headers).status_code == 400
    assert client.put("/api/keys/alice", json={"public_key": "***"}, headers=headers).status_code == 400

    assert client.put("/api/keys/alice", json={"public_key": encoded}, headers=headers).status_code == 200
    assert client.get("/api/keys/alice").json() == {"username": "alice", "public_key": encoded}

    # Reset replaces the published key
    replacement = b64encode(bob.public_key)
    assert client.put("/api/keys/alice", json={"public_key": replacement}, headers=headers).status_code == 200
    assert client.get("/api/keys/alice").json()["public_key"] == replacement


def test_invalid_token(client):
    headers = {"Authorization": "Bearer garbage"}

    assert client.get("/api/messages", headers=headers).status_code == 401
    assert client.get("/api/messages").status_code == 401


def test_direct_messages(client):
    alice = register(client, "alice")
    bob = register(client, "bob")
    carol = register(client, "carol")
    row = {"ciphertext": "Y3Q=", "iv": "AAAAAAAAAAAAAAAA", "wrapped_key": "d2s="}

    assert client.post("/api/messages", json={**row, "recipient_id": "nobody"}, headers=alice).status_code == 404

    first = client.post("/api/messages", json={**row, "recipient_id": "bob"}, headers=alice).json()
    client.post("/api/messages", json={**row, "recipient_id": "alice"}, headers=bob)
    client.post("/api/messages", json={**row, "recipient_id": "carol"}, headers=alice)

    assert first["sender_id"] == "alice"
    assert first["status"] == "sent"
    assert first["ciphertext"] == row["ciphertext"]

    conversation = client.get("/api/messages", params={"peer": "bob"}, headers=alice).json()["messages"]
    assert [m["sender_id"] for m in conversation] == ["bob", "alice"]
    assert len(client.get("/api/messages", headers=alice).json()["messages"]) == 3
    assert len(client.get("/api/messages", params={"limit": 1}, headers=alice).json()["messages"]) == 1
    assert client.get("/api/messages", headers=carol).json()["messages"][0]["recipient_id"] == "carol"

    # Only the recipient can mark a message read
    assert client.post(f"/api/messages/{first['id']}/read", headers=alice).status_code == 404
    assert client.post(f"/api/messages/{first['id']}/read", headers=bob).status_code == 200
    received = client.get("/api/messages", params={"peer": "alice"}, headers=bob).json()["messages"]
    assert next(m for m in received if m["id"] == first["id"])["status"] == "read"


def test_groups(client):
    alice = register(client, "alice")
    bob = register(client, "bob")
    carol = register(client, "carol")
    members = [
        {"member_id": "alice", "encrypted_group_key": "a2V5QQ=="},
        {"member_id": "bob", "encrypted_group_key": "a2V5Qg=="},
    ]
    group = {"group_id": "g1", "name": "friends", "members": members}

    assert client.post("/api/groups", json={**group, "members": members[1:]}, headers=alice).status_code == 400
    assert client.post("/api/groups", json={**group, "members": members + members[:1]}, headers=alice).status_code == 400
    assert client.post("/api/groups", json=group, headers=alice).status_code == 200
    assert client.post("/api/groups", json=group, headers=alice).status_code == 409

    assert client.get("/api/groups/g1/members", headers=bob).json() == {"members": ["alice", "bob"]}
    assert client.get("/api/groups/g1/members", headers=carol).status_code == 403
    assert client.get("/api/groups/missing/members", headers=alice).status_code == 404

    record = client.get("/api/groups/g1/members/bob/key", headers=bob).json()
    assert record["encrypted_group_key"] == "a2V5Qg=="
    assert record["role"] == "member"
    assert client.get("/api/groups/g1/members/alice/key", headers=alice).json()["role"] == "admin"
    assert client.get("/api/groups/g1/members/alice/key", headers=bob).status_code == 403
    assert client.get("/api/groups/g1/members/carol/key", headers=carol).status_code == 404

    carol_key = {"member_id": "carol", "encrypted_group_key": "a2V5Qw=="}
    assert client.post("/api/groups/g1/members", json=carol_key, headers=carol).status_code == 403
    assert client.post("/api/groups/g1/members", json={**carol_key, "member_id": "nobody"}, headers=bob).status_code == 404
    assert client.post("/api/groups/g1/members", json=carol_key, headers=bob).status_code == 200
    assert client.post("/api/groups/g1/members", json=carol_key, headers=bob).status_code == 409


def test_group_messages(client):
    alice = register(client, "alice")
    outsider = register(client, "mallory")
    group = {
        "group_id": "g2",
        "name": "solo",
        "members": [{"member_id": "alice", "encrypted_group_key": "a2V5"}],
    }
    client.post("/api/groups", json=group, headers=alice)
    message = {"ciphertext": "Y3Q=", "iv": "AAAAAAAAAAAAAAAA"}

    assert client.post("/api/groups/g2/messages", json=message, headers=outsider).status_code == 403
    assert client.get("/api/groups/g2/messages", headers=outsider).status_code == 403

    stored = client.post("/api/groups/g2/messages", json=message, headers=alice).json()
    assert stored["group_id"] == "g2"
    assert stored["sender_id"] == "alice"
    assert client.get("/api/groups/g2/messages", headers=alice).json()["messages"] == [stored]
