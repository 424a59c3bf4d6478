"""HTTP tests for creating, joining and leaving pairs."""

from __future__ import annotations

import re

from conftest import auth, register


def _create(client, token: str) -> dict:
    response = client.post("/api/pairs/create", headers=auth(token))
    assert response.status_code == 201, response.text
    return response.json()["pair"]


def test_pair_lifecycle_initiator_leaves(client) -> None:
    anna = register(client, "anna@example.com", name="Анна")
    boris = register(client, "boris@example.com", name="Борис")

    assert client.get("/api/pairs", headers=auth(anna)).json() == {"pair": None}

    pair = _create(client, anna)
    assert re.fullmatch(r"\d{6}", pair["code"])
    assert pair["partner"] is None

    joined = client.post("/api/pairs/join", json={"code": pair["code"]}, headers=auth(boris))
    assert joined.status_code == 200
    assert joined.json()["pair"]["partner"]["name"] == "Анна"

    seen_by_anna = client.get("/api/pairs", headers=auth(anna)).json()["pair"]
    assert seen_by_anna["partner"]["email"] == "boris@example.com"

    left = client.post("/api/pairs/leave", headers=auth(anna))
    assert left.status_code == 200
    assert client.get("/api/pairs", headers=auth(anna)).json() == {"pair": None}
    assert client.get("/api/pairs", headers=auth(boris)).json() == {"pair": None}

    # The pair is gone, so its code no longer resolves.
    carol = register(client, "carol@example.com")
    again = client.post("/api/pairs/join", json={"code": pair["code"]}, headers=auth(carol))
    assert again.status_code == 404
    assert again.json()["code"] == "CODE_NOT_FOUND"


def test_joiner_leaving_reopens_pair(client) -> None:
    anna = register(client, "anna@example.com")
    boris = register(client, "boris@example.com")
    carol = register(client, "carol@example.com")

    pair = _create(client, anna)
    client.post("/api/pairs/join", json={"code": pair["code"]}, headers=auth(boris))

    assert client.post("/api/pairs/leave", headers=auth(boris)).status_code == 200
    reopened = client.get("/api/pairs", headers=auth(anna)).json()["pair"]
    assert reopened["id"] == pair["id"]
    assert reopened["partner"] is None

    rejoined = client.post("/api/pairs/join", json={"code": reopened["code"]}, headers=auth(carol))
    assert rejoined.status_code == 200
    assert rejoined.json()["pair"]["id"] == pair["id"]


def test_cannot_create_or_join_while_paired(client) -> None:
    anna = register(client, "anna@example.com")
    boris = register(client, "boris@example.com")
    pair = _create(client, anna)

    second = client.post("/api/pairs/create", headers=auth(anna))
    assert second.status_code == 409
    assert second.json()["code"] == "ALREADY_IN_PAIR"

    own = client.post("/api/pairs/join", json={"code": pair["code"]}, headers=auth(anna))
    assert own.status_code == 409

    client.post("/api/pairs/join", json={"code": pair["code"]}, headers=auth(boris))
    boris_create = client.post("/api/pairs/create", headers=auth(boris))
    assert boris_create.status_code == 409


def test_join_validation_and_unknown_code(client) -> None:
    token = register(client, "anna@example.com")

    malformed = client.post("/api/pairs/join", json={"code": "12ab"}, headers=auth(token))
    assert malformed.status_code == 400
    assert malformed.json()["code"] == "VALIDATION_ERROR"
    assert malformed.json()["error"] == "Код пары должен состоять из 6 цифр"

    missing = client.post("/api/pairs/join", json={}, headers=auth(token))
    assert missing.status_code == 400
    assert missing.json()["error"] == "Код пары должен состоять из 6 цифр"

    unknown = client.post("/api/pairs/join", json={"code": "000000"}, headers=auth(token))
    assert unknown.status_code == 404


def test_leave_without_pair_is_not_found(client) -> None:
    token = register(client, "anna@example.com")

    response = client.post("/api/pairs/leave", headers=auth(token))

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_IN_PAIR"
