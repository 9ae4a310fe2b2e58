"""
tests/test_unlock.py
"""
from __future__ import annotations

import datetime as _dt

from keyblog import blog


def _add_article(store, article_id: str, **fields) -> dict:
    article = {
        "id": article_id,
        "title": f"Title of {article_id}",
        "summary": "summary",
        "date": "2099-01-01",
        "hidden": False,
        "requiresKey": True,
        "views": 0,
        **fields,
    }
    articles = store.load("articles")
    articles.insert(0, article)
    store.save("articles", articles)
    store.write_content(article_id, f"# {article_id}\n\nsecret **body**")
    return article


def _add_key(store, code: str, **fields) -> dict:
    key = {
        "code": code,
        "status": "unused",
        "bound_article_id": None,
        "create_time": "2099-01-01T00:00:00.000+00:00",
        "activate_time": None,
        "expire_time": None,
        "duration_hours": -1,
        "fingerprints": [],
        **fields,
    }
    keys = store.load("keys")
    keys.insert(0, key)
    store.save("keys", keys)
    return key


def _unlock(client, key, article_id="post-a", fingerprint="fp1", **kw):
    return client.post(
        "/api/unlock",
        json={"article_id": article_id, "key": key, "fingerprint": fingerprint},
        **kw,
    )


# ───────────────────────── happy path ─────────────────────────────────
def test_unlock_returns_rendered_body(client, store):
    _add_article(store, "post-a")
    _add_key(store, "KMGOOD")

    rv = _unlock(client, "KMGOOD")
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["success"] is True
    assert "<strong>body</strong>" in data["content"]

    k = store.load("keys")[0]
    assert k["status"] == "active"
    assert k["bound_article_id"] == "post-a"
    assert k["fingerprints"] == ["fp1"]


def test_unlock_sets_signed_cookie_that_opens_the_article(client, store):
    _add_article(store, "post-a")
    _add_key(store, "KMGOOD")

    # before: the body is withheld
    assert b"secret" not in client.get("/article/post-a").data

    _unlock(client, "KMGOOD")
    cookie = client.get_cookie("unlocked_post-a")
    assert cookie is not None and cookie.value != "true"

    rv = client.get("/article/post-a")
    assert b"<strong>body</strong>" in rv.data


def test_forged_cookie_does_not_open(client, store):
    _add_article(store, "post-a")
    client.set_cookie("unlocked_post-a", "true")
    assert b"<strong>body</strong>" not in client.get("/article/post-a").data


def test_form_payload_accepted(client, store):
    _add_article(store, "post-a")
    _add_key(store, "KMGOOD")
    rv = client.post(
        "/api/unlock", data={"article_id": "post-a", "key": "KMGOOD", "fingerprint": "x"}
    )
    assert rv.get_json()["success"] is True


# ───────────────────────── denials ────────────────────────────────────
def test_invalid_key(client, store):
    _add_article(store, "post-a")
    data = _unlock(client, "KMNOPE").get_json()
    assert data == {"success": False, "message": "Invalid key."}


def test_other_article_mismatch(client, store):
    _add_article(store, "post-a")
    _add_article(store, "post-b")
    _add_key(store, "KMGOOD")
    assert _unlock(client, "KMGOOD").get_json()["success"]

    data = _unlock(client, "KMGOOD", article_id="post-b").get_json()
    assert data["success"] is False
    assert "another article" in data["message"]


def test_device_limit_from_settings(client, store):
    _add_article(store, "post-a")
    _add_key(store, "KMGOOD")
    store.save("settings", {"max_devices_per_key": 1})

    assert _unlock(client, "KMGOOD", fingerprint="fp1").get_json()["success"]
    data = _unlock(client, "KMGOOD", fingerprint="fp2").get_json()
    assert data["success"] is False
    assert "other devices" in data["message"]
    assert store.load("keys")[0]["fingerprints"] == ["fp1"]


def test_expired_key_is_persisted(client, store, monkeypatch):
    _add_article(store, "post-a")
    _add_key(
        store,
        "KMOLD",
        status="active",
        bound_article_id="post-a",
        duration_hours=1,
        activate_time="2000-01-01T00:00:00.000+00:00",
        expire_time="2000-01-01T01:00:00.000+00:00",
        fingerprints=["fp1"],
    )
    data = _unlock(client, "KMOLD").get_json()
    assert data == {"success": False, "message": "This key has expired."}
    assert store.load("keys")[0]["status"] == "expired"


def test_cookie_lifetime_follows_key(client, store, monkeypatch):
    now = _dt.datetime(2099, 6, 1, tzinfo=_dt.timezone.utc)
    monkeypatch.setattr(blog, "utc_now", lambda: now)
    _add_article(store, "post-a")
    _add_key(store, "KMHOUR", duration_hours=1)

    rv = _unlock(client, "KMHOUR")
    set_cookie = rv.headers["Set-Cookie"]
    assert "Max-Age=3600" in set_cookie


def test_kept_cookie_stops_working_when_key_expires(client, store, monkeypatch):
    now = _dt.datetime(2099, 6, 1, tzinfo=_dt.timezone.utc)
    monkeypatch.setattr(blog, "utc_now", lambda: now)
    _add_article(store, "post-a")
    _add_key(store, "KMHOUR", duration_hours=1)
    assert _unlock(client, "KMHOUR").get_json()["success"]
    token = client.get_cookie("unlocked_post-a").value

    assert b"<strong>body</strong>" in client.get("/article/post-a").data

    # a client that ignores Max-Age keeps sending the token
    later = now + _dt.timedelta(hours=2)
    monkeypatch.setattr(blog, "utc_now", lambda: later)
    client.set_cookie("unlocked_post-a", token)
    assert b"<strong>body</strong>" not in client.get("/article/post-a").data


def test_huge_duration_from_old_data_still_redeems(client, store):
    _add_article(store, "post-a")
    _add_key(store, "KMBIG", duration_hours=100_000_000)

    rv = _unlock(client, "KMBIG")
    assert rv.status_code == 200
    assert rv.get_json()["success"] is True
    k = store.load("keys")[0]
    assert k["status"] == "active" and k["expire_time"] is not None


def test_unknown_article_does_not_burn_key(client, store):
    _add_key(store, "KMGOOD")
    rv = _unlock(client, "KMGOOD", article_id="post-missing")
    assert rv.status_code == 404
    assert rv.get_json()["success"] is False
    assert store.load("keys")[0]["status"] == "unused"


def test_hidden_article_not_unlockable(client, store):
    _add_article(store, "post-a", hidden=True)
    _add_key(store, "KMGOOD")
    assert _unlock(client, "KMGOOD").status_code == 404


def test_content_read_failure_keeps_activation(client, store):
    _add_article(store, "post-a")
    store.delete_content("post-a")
    _add_key(store, "KMGOOD")

    data = _unlock(client, "KMGOOD").get_json()
    assert data == {"success": False, "message": "Failed to read the article content."}
    assert store.load("keys")[0]["status"] == "active"


def test_denials_do_not_write(client, store):
    _add_article(store, "post-a")
    _add_article(store, "post-b")
    _add_key(store, "KMGOOD", status="active", bound_article_id="post-b", fingerprints=["x"])
    path = store.path("keys")
    before = path.stat().st_mtime_ns, path.read_text()

    _unlock(client, "KMGOOD")
    assert (path.stat().st_mtime_ns, path.read_text()) == before


def test_unlock_rate_limited(client, store, monkeypatch):
    _add_article(store, "post-a")
    monkeypatch.setitem(blog.app.config, "UNLOCK_RATE_LIMIT", 3)
    client.environ_base["REMOTE_ADDR"] = "10.9.9.9"
    for _ in range(3):
        assert _unlock(client, "KMNOPE").status_code == 200
    assert _unlock(client, "KMNOPE").status_code == 429


# ───────────────────────── gate on the detail page ────────────────────
def test_gate_off_globally(client, store):
    _add_article(store, "post-a")
    store.save("settings", {"enable_key_verification": False})
    assert b"<strong>body</strong>" in client.get("/article/post-a").data


def test_gate_off_per_article(client, store):
    _add_article(store, "post-a", requiresKey=False)
    assert b"<strong>body</strong>" in client.get("/article/post-a").data


def test_detail_counts_views(client, store):
    _add_article(store, "post-a")
    client.get("/article/post-a")
    client.get("/article/post-a")
    assert store.load("articles")[0]["views"] == 2


def test_detail_404_for_hidden_and_missing(client, store):
    _add_article(store, "post-h", hidden=True)
    assert client.get("/article/post-h").status_code == 404
    assert client.get("/article/post-zzz").status_code == 404
    assert store.load("articles")[0]["views"] == 0
