"""
tests/test_articles.py
"""
from __future__ import annotations

import re


CSRF = "test-token"


def _login(client) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = CSRF


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


def _save(client, **fields):
    data = {"title": "Hello", "summary": "sum", "content": "# Body", "csrf": CSRF}
    data.update(fields)
    return client.post("/admin/article/save", data=data)


def test_create_article(client, store):
    _login(client)
    rv = _save(client, requiresKey="on")
    assert rv.status_code == 302

    [a] = store.load("articles")
    assert re.fullmatch(r"post-\d{8}-\d{6}-[a-z0-9]{4}", a["id"])
    assert a["title"] == "Hello"
    assert a["hidden"] is False
    assert a["requiresKey"] is True
    assert a["views"] == 0
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", a["date"])
    assert store.read_content(a["id"]) == "# Body"


def test_new_articles_go_on_top(client, store):
    _add_article(store, "post-old")
    _login(client)
    _save(client, title="Newer")
    assert store.load("articles")[0]["title"] == "Newer"


def test_update_article(client, store):
    _add_article(store, "post-a", views=7)
    _login(client)
    _save(client, id="post-a", title="Renamed", content="new body", hidden="on")

    [a] = store.load("articles")
    assert a["title"] == "Renamed"
    assert a["hidden"] is True
    assert a["requiresKey"] is False          # unchecked box
    assert a["views"] == 7
    assert store.read_content("post-a") == "new body"


def test_update_unknown_article_404(client, store):
    _login(client)
    assert _save(client, id="post-nope").status_code == 404
    assert store.load("articles") == []


def test_toggle_visibility(client, store):
    _add_article(store, "post-a")
    _login(client)
    rv = client.post("/admin/article/post-a/toggle-visibility", data={"csrf": CSRF})
    assert rv.get_json() == {"success": True, "hidden": True}
    rv = client.post("/admin/article/post-a/toggle-visibility", data={"csrf": CSRF})
    assert rv.get_json() == {"success": True, "hidden": False}


def test_toggle_key_requirement_defaults_to_required(client, store):
    _add_article(store, "post-a")
    articles = store.load("articles")
    del articles[0]["requiresKey"]
    store.save("articles", articles)

    _login(client)
    rv = client.post("/admin/article/post-a/toggle-key-requirement", data={"csrf": CSRF})
    assert rv.get_json() == {"success": True, "requiresKey": False}


def test_toggle_missing_article(client):
    _login(client)
    rv = client.post("/admin/article/post-x/toggle-visibility", data={"csrf": CSRF})
    assert rv.status_code == 404


def test_delete_article_removes_content(client, store):
    _add_article(store, "post-a")
    _login(client)
    rv = client.post(
        "/admin/article/post-a/delete?page=2&limit=5&sort=views_desc",
        data={"csrf": CSRF},
    )
    assert rv.status_code == 302
    loc = rv.headers["Location"]
    assert "articlePage=2" in loc and "articleLimit=5" in loc and "sort=views_desc" in loc
    assert store.load("articles") == []
    assert not store.content_path("post-a").exists()


def test_editor_pages(client, store):
    _add_article(store, "post-a")
    _login(client)
    assert client.get("/admin/article/new").status_code == 200
    html = client.get("/admin/article/edit/post-a").data.decode()
    assert "secret **body**" in html
    assert client.get("/admin/article/edit/post-nope").status_code == 404


# ───────────────────────── public index ───────────────────────────────
def test_index_hides_hidden_and_paginates(client, store):
    for i in range(12):
        _add_article(store, f"post-{i:02d}", title=f"T{i:02d}")
    _add_article(store, "post-hidden", title="Invisible", hidden=True)

    html = client.get("/?limit=5").data.decode()
    assert "Invisible" not in html
    assert "Page 1 / 3" in html

    # limit below the floor is raised to 5, page past the end clamps
    html = client.get("/?limit=1&page=99").data.decode()
    assert "Page 3 / 3" in html


def test_index_hot_list(client, store):
    _add_article(store, "post-a", title="Cold", views=1)
    _add_article(store, "post-b", title="Hot", views=50)
    html = client.get("/").data.decode()
    popular = html.split("Popular", 1)[1]
    assert popular.index("Hot") < popular.index("Cold")


# ───────────────────────── static pages ───────────────────────────────
def test_about_and_privacy(client, store):
    assert b"Privacy policy" in client.get("/privacy").data

    _login(client)
    client.post("/admin/page/about", data={"content": "# We are *here*", "csrf": CSRF})
    assert store.read_page("about") == "# We are *here*"
    assert b"<em>here</em>" in client.get("/about").data


def test_unknown_page_editor_404(client):
    _login(client)
    assert client.get("/admin/page/secrets").status_code == 404
