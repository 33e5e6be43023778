from __future__ import annotations

import os

from conftest import post_tweet, register, run_sql

from app.settings import settings


def _upload_path(url: str) -> str:
    return os.path.join(settings.upload_dir, url.rsplit("/", 1)[1])


def test_register_returns_token_and_nickname(client):
    body = register(client, "alice")
    assert body["success"] is True
    assert body["nickname"] == "alice"
    assert body["token"]
    assert body["migrated"] == 0


def test_duplicate_nickname_is_a_conflict_and_keeps_one_row(client):
    register(client, "alice")
    resp = client.post("/api/register", json={"nickname": "alice", "password": "other"})
    assert resp.status_code == 409
    assert "error" in resp.json()
    assert run_sql("SELECT count(*) FROM users WHERE nickname = 'alice'") == [(1,)]


def test_register_validates_input(client):
    assert client.post("/api/register", json={"nickname": "bad name!", "password": "x"}).status_code == 400
    assert client.post("/api/register", json={"nickname": "visitor_42", "password": "x"}).status_code == 400
    assert client.post("/api/register", json={"nickname": "a" * 31, "password": "x"}).status_code == 400
    assert client.post("/api/register", json={"nickname": "alice", "password": ""}).status_code == 400

    missing = client.post("/api/register", json={"nickname": "alice"})
    assert missing.status_code == 400
    assert "password" in missing.json()["error"]


def test_login(client):
    register(client, "alice", "secret")
    bad = client.post("/api/login", json={"nickname": "alice", "password": "nope"})
    assert bad.status_code == 401
    assert client.post("/api/login", json={"nickname": "nobody", "password": "secret"}).status_code == 401

    ok = client.post("/api/login", json={"nickname": "alice", "password": "secret"})
    assert ok.status_code == 200
    body = ok.json()
    assert body["success"] is True
    assert body["user"]["nickname"] == "alice"
    assert body["user"]["bio"] == settings.default_bio
    assert body["token"]


def test_check_nickname(client):
    register(client, "alice")
    assert client.get("/api/check-nickname", params={"nickname": "alice"}).json() == {"available": False}
    assert client.get("/api/check-nickname", params={"nickname": "bob"}).json() == {"available": True}
    assert client.get("/api/check-nickname", params={"nickname": "no spaces"}).json() == {"available": False}
    assert client.get("/api/check-nickname").json() == {"available": False}


def test_anonymous_profile_is_a_placeholder(client):
    for params in ({}, {"uid": "ghost"}, {"uid": "visitor_1"}):
        body = client.get("/api/profile", params=params).json()
        assert body["nickname"] == settings.anonymous_nickname
        assert body["loggedIn"] is False


def test_registration_transfers_visitor_content(client):
    register(client, "bob")
    bob_tweet = post_tweet(client, "bob", "bob's tweet")
    first = post_tweet(client, "visitor_abc", "one")
    post_tweet(client, "visitor_abc", "two")
    client.post(f"/api/tweets/{first['id']}/comment", json={"uid": "visitor_abc", "text": "self reply"})
    client.post(f"/api/tweets/{bob_tweet['id']}/comment", json={"uid": "visitor_abc", "text": "hi bob"})

    body = register(client, "alice", visitorId="visitor_abc")
    assert body["migrated"] == 4

    assert run_sql("SELECT count(*) FROM tweets WHERE author = 'visitor_abc'") == [(0,)]
    assert run_sql("SELECT count(*) FROM comments WHERE author = 'visitor_abc'") == [(0,)]
    assert run_sql("SELECT count(*) FROM tweets WHERE author = 'alice'") == [(2,)]
    assert run_sql("SELECT count(*) FROM comments WHERE author = 'alice'") == [(2,)]

    tweet = client.get(f"/api/tweets/{first['id']}").json()
    assert tweet["user"] == "alice"
    assert tweet["comments"][0]["user"] == "alice"


def test_login_transfers_visitor_content(client):
    register(client, "alice")
    post_tweet(client, "visitor_zz", "before login")
    resp = client.post("/api/login", json={"nickname": "alice", "password": "secret", "visitorId": "visitor_zz"})
    assert resp.json()["migrated"] == 1
    assert [t["uid"] for t in client.get("/api/tweets").json()] == ["alice"]


def test_login_ignores_non_visitor_ids(client):
    register(client, "alice")
    register(client, "bob")
    post_tweet(client, "bob", "mine")
    resp = client.post("/api/login", json={"nickname": "alice", "password": "secret", "visitorId": "bob"})
    assert resp.json()["migrated"] == 0
    assert client.get("/api/tweets").json()[0]["uid"] == "bob"


def test_profile_update_bio_and_avatar(client):
    register(client, "alice")
    resp = client.post(
        "/api/profile",
        data={"uid": "alice", "bio": "hello there"},
        files={"avatar": ("me.png", b"first", "image/png")},
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["bio"] == "hello there"
    assert body["avatar"].startswith("/uploads/")
    assert body["avatar"].endswith("-me.png")
    assert client.get(body["avatar"]).content == b"first"

    first_avatar = body["avatar"]
    second = client.post("/api/profile", data={"uid": "alice"}, files={"avatar": ("me2.png", b"second", "image/png")}).json()
    assert second["avatar"] != first_avatar
    assert second["bio"] == "hello there"
    assert not os.path.exists(_upload_path(first_avatar))

    banner = client.post("/api/profile", data={"uid": "alice"}, files={"banner": ("top.jpg", b"b", "image/jpeg")}).json()
    assert banner["banner"].endswith("-top.jpg")
    assert client.get("/api/profile", params={"uid": "alice"}).json()["banner"] == banner["banner"]


def test_profile_update_rejections(client):
    register(client, "alice")
    register(client, "bob")
    assert client.post("/api/profile", data={"bio": "x"}).status_code == 401
    assert client.post("/api/profile", data={"uid": "visitor_1", "bio": "x"}).status_code == 403
    assert client.post("/api/profile", data={"uid": "ghost", "bio": "x"}).status_code == 403
    assert client.post("/api/profile", data={"uid": "alice", "newNickname": "bob"}).status_code == 409
    assert client.post("/api/profile", data={"uid": "alice", "newNickname": "no way"}).status_code == 400


def test_rename_cascades_to_content_reactions_and_bookmarks(client):
    register(client, "alice")
    register(client, "bob")
    mine = post_tweet(client, "alice", "alice writes")
    theirs = post_tweet(client, "bob", "bob writes")
    client.post(f"/api/tweets/{theirs['id']}/react", json={"uid": "alice", "type": "like"})
    client.post(f"/api/tweets/{theirs['id']}/comment", json={"uid": "alice", "text": "nice"})
    client.post(f"/api/tweets/{theirs['id']}/bookmark", json={"uid": "alice"})

    resp = client.post("/api/profile", data={"uid": "alice", "newNickname": "alicia"})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["nickname"] == "alicia"
    assert body["token"]

    tweet = client.get(f"/api/tweets/{theirs['id']}").json()
    assert tweet["reactionUsers"]["like"] == ["alicia"]
    assert tweet["comments"][0]["user"] == "alicia"
    assert client.get(f"/api/tweets/{mine['id']}").json()["user"] == "alicia"
    assert [t["id"] for t in client.get("/api/bookmarks", params={"uid": "alicia"}).json()] == [theirs["id"]]
    assert client.get("/api/profile", params={"uid": "alice"}).json()["loggedIn"] is False

    # Toggling again as the new name removes the carried-over reaction.
    again = client.post(f"/api/tweets/{theirs['id']}/react", json={"uid": "alicia", "type": "like"}).json()
    assert again["reactions"]["like"] == 0


def test_bearer_token_identity(client):
    token = register(client, "alice")["token"]
    register(client, "bob")
    headers = {"Authorization": f"Bearer {token}"}

    assert client.get("/api/profile", headers=headers).json()["nickname"] == "alice"
    forged = client.post("/api/profile", data={"uid": "bob", "bio": "pwned"}, headers=headers)
    assert forged.status_code == 403
    ok = client.post("/api/profile", data={"bio": "mine"}, headers=headers)
    assert ok.json()["bio"] == "mine"


def test_delete_profile_cascades(client):
    register(client, "alice")
    register(client, "bob")
    mine = post_tweet(client, "alice", "bye", files=[("files", ("pic.png", b"img", "image/png"))])
    theirs = post_tweet(client, "bob", "stays")
    client.post(f"/api/tweets/{theirs['id']}/react", json={"uid": "alice", "type": "omg"})
    client.post(f"/api/tweets/{theirs['id']}/comment", json={"uid": "alice", "text": "soon gone"})
    client.post(f"/api/tweets/{mine['id']}/bookmark", json={"uid": "bob"})
    client.post(f"/api/tweets/{theirs['id']}/bookmark", json={"uid": "alice"})

    assert client.delete("/api/profile").status_code == 401
    assert client.delete("/api/profile", params={"uid": "ghost"}).status_code == 404

    resp = client.delete("/api/profile", params={"uid": "alice"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True}

    assert client.get(f"/api/tweets/{mine['id']}").status_code == 404
    assert not os.path.exists(_upload_path(mine["mediaUrl"]))
    remaining = client.get(f"/api/tweets/{theirs['id']}").json()
    assert remaining["comments"] == []
    assert remaining["reactions"]["omg"] == 0
    assert client.get("/api/bookmarks", params={"uid": "bob"}).json() == []
    assert run_sql("SELECT count(*) FROM bookmarks") == [(0,)]
    assert client.get("/api/profile", params={"uid": "alice"}).json()["loggedIn"] is False
