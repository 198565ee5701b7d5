"""Franchise and store administration over HTTP."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from jwtpizza import app as app_module
from jwtpizza.bootstrap import bootstrap_admin
from jwtpizza.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _login(client, email, password):
    response = client.put("/api/auth", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


@pytest.fixture
def admin_token(client):
    asyncio.run(bootstrap_admin("常用名字", "a@jwt.com", "toomanysecrets", runtime=get_runtime()))
    return _login(client, "a@jwt.com", "toomanysecrets")


@pytest.fixture
def diner_token(client):
    response = client.post(
        "/api/auth", json={"name": "pizza franchisee", "email": "f@jwt.com", "password": "a"}
    )
    return response.json()["data"]["token"]


def _create_franchise(client, admin_token, name="pizzaPocket", admins=("f@jwt.com",)):
    response = client.post(
        "/api/franchise",
        headers=_auth(admin_token),
        json={"name": name, "admins": [{"email": e} for e in admins]},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_admin_creates_franchise(client, admin_token, diner_token):
    franchise = _create_franchise(client, admin_token)

    assert franchise["name"] == "pizzaPocket"
    assert franchise["admins"][0]["email"] == "f@jwt.com"


def test_diner_cannot_create_franchise(client, diner_token):
    response = client.post(
        "/api/franchise", headers=_auth(diner_token), json={"name": "x", "admins": []}
    )

    assert response.status_code == 403


def test_unknown_franchise_admin(client, admin_token):
    response = client.post(
        "/api/franchise",
        headers=_auth(admin_token),
        json={"name": "x", "admins": [{"email": "ghost@jwt.com"}]},
    )

    assert response.status_code == 404


def test_franchisee_manages_own_stores_only(client, admin_token, diner_token):
    own = _create_franchise(client, admin_token)
    other = _create_franchise(client, admin_token, name="other", admins=())

    created = client.post(
        f"/api/franchise/{own['id']}/store", headers=_auth(diner_token), json={"name": "SLC"}
    )
    assert created.status_code == 200
    store = created.json()["data"]
    assert store["franchiseId"] == own["id"]

    denied = client.post(
        f"/api/franchise/{other['id']}/store", headers=_auth(diner_token), json={"name": "NYC"}
    )
    assert denied.status_code == 403

    deleted = client.delete(
        f"/api/franchise/{own['id']}/store/{store['id']}", headers=_auth(diner_token)
    )
    assert deleted.status_code == 200


def test_admin_creates_store_anywhere(client, admin_token):
    franchise = _create_franchise(client, admin_token, admins=())

    response = client.post(
        f"/api/franchise/{franchise['id']}/store", headers=_auth(admin_token), json={"name": "SLC"}
    )

    assert response.status_code == 200


def test_public_listing_and_user_franchises(client, admin_token, diner_token):
    _create_franchise(client, admin_token)

    public = client.get("/api/franchise")
    assert public.status_code == 200
    listing = public.json()["data"]
    assert listing["more"] is False
    assert listing["franchises"][0]["admins"] is None

    as_admin = client.get("/api/franchise", headers=_auth(admin_token)).json()["data"]
    assert as_admin["franchises"][0]["admins"][0]["email"] == "f@jwt.com"

    me = client.get("/api/user/me", headers=_auth(diner_token)).json()["data"]
    mine = client.get(f"/api/franchise/{me['id']}", headers=_auth(diner_token))
    assert [f["name"] for f in mine.json()["data"]] == ["pizzaPocket"]


def test_delete_franchise_is_admin_only(client, admin_token, diner_token):
    franchise = _create_franchise(client, admin_token)

    assert client.delete(f"/api/franchise/{franchise['id']}", headers=_auth(diner_token)).status_code == 403
    assert client.delete(f"/api/franchise/{franchise['id']}", headers=_auth(admin_token)).status_code == 200
    assert client.delete(f"/api/franchise/{franchise['id']}", headers=_auth(admin_token)).status_code == 404


def test_admin_deletes_other_user(client, admin_token, diner_token):
    me = client.get("/api/user/me", headers=_auth(diner_token)).json()["data"]

    response = client.delete(f"/api/user/{me['id']}", headers=_auth(admin_token))

    assert response.status_code == 200
    assert client.get("/api/user/me", headers=_auth(diner_token)).status_code == 401
