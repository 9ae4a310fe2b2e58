#!/usr/bin/env python3
"""
A small blog whose article bodies are unlocked with card keys.
"""

import base64
import hashlib
import io
import os
import secrets
import string
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
import markdown
import pyotp
import qrcode
import qrcode.image.svg
from flask import (
    Flask,
    Response,
    abort,
    flash,
    jsonify,
    redirect,
    render_template_string,
    request,
    send_from_directory,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from keyblog import keys as cardkeys
from keyblog import listing
from keyblog.gate import TOKEN_MAX_AGE, UnlockTokens, is_locked
from keyblog.keys import Denial, KeyInUse, KeyNotFound
from keyblog.store import ContentMissing, CorruptCollection, JsonStore, valid_article_id

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DATA_DIR = Path(os.environ.get("KEYBLOG_DATA_DIR", ROOT / "data"))

GUIDE_FILE = ROOT / "USER_GUIDE.md"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

SECURE_COOKIES = os.environ.get("KEYBLOG_SECURE_COOKIES", "1") != "0"
LOGIN_RATE_LIMIT = int(os.environ.get("LOGIN_RATE_LIMIT", "5"))
UNLOCK_RATE_LIMIT = int(os.environ.get("UNLOCK_RATE_LIMIT", "20"))
PENDING_2FA_TTL = 300

DEFAULT_SETTINGS = {
    "site_name": "keyblog",
    "admin_password": "",
    "popup_title": "Enter a key to read the full article",
    "watermark_text": "",
    "wechat_qr_image": "",
    "default_key_duration_hours": 24,
    "max_devices_per_key": 2,
    "enable_key_verification": True,
    "two_fa_enabled": False,
}
DEFAULT_DURATION = DEFAULT_SETTINGS["default_key_duration_hours"]
DEFAULT_MAX_DEVICES = DEFAULT_SETTINGS["max_devices_per_key"]

PRIVACY_DEFAULT = (
    "# Privacy policy\n\n"
    "This site only records a basic browser fingerprint to verify keys. "
    "No other personal data is collected."
)
PAGE_TITLES = {"about": "About", "privacy": "Privacy policy"}

INDEX_LIMIT, INDEX_LIMIT_MIN, INDEX_LIMIT_MAX = 10, 5, 50
ADMIN_ARTICLE_LIMIT, ADMIN_KEY_LIMIT, ADMIN_LIMIT_MAX = 10, 5, 100
HOT_COUNT = 10

IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "image/svg+xml",
}
QR_STEM = "qr-custom"
MD_EXTENSIONS = ["fenced_code", "tables", "sane_lists", "toc"]

try:
    __version__ = version("keyblog")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATA_DIR=str(DATA_DIR))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=SECURE_COOKIES,
    LOGIN_RATE_LIMIT=LOGIN_RATE_LIMIT,
    UNLOCK_RATE_LIMIT=UNLOCK_RATE_LIMIT,
    MAX_CONTENT_LENGTH=8 * 1024 * 1024,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def render_markdown(text: str | None) -> Markup:
    return Markup(markdown.markdown(text or "", extensions=MD_EXTENSIONS))


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return render_markdown(text)


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    """ISO timestamp → 'YYYY-MM-DD HH:MM' (UTC), '–' when empty."""
    dt = cardkeys.parse_ts(iso)
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "–"


################################################################################
# Storage helpers
################################################################################
def get_store() -> JsonStore:
    # no caching: DATA_DIR may change between requests (tests)
    return JsonStore(app.config["DATA_DIR"])


def unlock_tokens() -> UnlockTokens:
    return UnlockTokens(app.config["SECRET_KEY"])


def load_settings() -> dict:
    return {**DEFAULT_SETTINGS, **get_store().load("settings")}


def find_article(articles: list, article_id: str | None) -> dict | None:
    if not valid_article_id(article_id):
        return None
    return next((a for a in articles if a.get("id") == article_id), None)


def new_article_id(now: datetime, taken=()) -> str:
    stamp = now.strftime("%Y%m%d-%H%M%S")
    alphabet = string.ascii_lowercase + string.digits
    while True:
        suffix = "".join(secrets.choice(alphabet) for _ in range(4))
        article_id = f"post-{stamp}-{suffix}"
        if article_id not in taken:
            return article_id


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
def cli_init(password: str):
    """Create the data directory and set the admin password."""
    store = get_store()
    store.ensure_dirs()
    with store.editing("settings") as stored:
        for k, v in DEFAULT_SETTINGS.items():
            stored.setdefault(k, v)
        stored["admin_password"] = password
    click.secho(f"\n✅  Data directory ready at {store.root}", fg="green")
    click.echo("Sign in at /login with the password you just chose.")


@app.cli.command("gen-keys")
@click.option("--count", default=1, show_default=True, help="How many keys")
@click.option(
    "--duration", default=-1, show_default=True, help="Hours after activation (-1 = unlimited)"
)
def cli_gen_keys(count: int, duration: int):
    """Generate unused keys and print their codes."""
    try:
        cardkeys.check_duration(duration)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--duration") from None
    with get_store().editing("keys") as key_list:
        fresh = cardkeys.generate(key_list, count, duration, utc_now())
    for key in fresh:
        click.echo(key["code"])


@app.cli.command("keys-unlimited")
def cli_keys_unlimited():
    """Make every key unlimited and revive expired ones."""
    with get_store().editing("keys") as key_list:
        n = cardkeys.make_unlimited(key_list)
    click.secho(f"Updated {n} keys.", fg="yellow")


@app.cli.command("seed")
@click.option("--count", default=20, show_default=True)
def cli_seed(count: int):
    """Fill the blog with demo articles."""
    store = get_store()
    store.ensure_dirs()
    now = utc_now()
    with store.editing("articles") as articles:
        taken = {a.get("id") for a in articles}
        for i in range(count):
            title = f"Demo article {i + 1}"
            article_id = new_article_id(now, taken)
            taken.add(article_id)
            articles.insert(
                0,
                {
                    "id": article_id,
                    "title": title,
                    "summary": f"A short summary of {title.lower()}.",
                    "date": now.date().isoformat(),
                    "hidden": False,
                    "requiresKey": True,
                    "views": 0,
                },
            )
            store.write_content(article_id, _demo_body(title))
    click.echo(f"Seeded {count} articles.")


def _demo_body(title: str) -> str:
    filler = "\n\n".join(["Placeholder text to pad the article out."] * 10)
    return (
        f"# {title}\n\n"
        f"This is the full text of **{title}**.\n\n"
        "## Code\n\n"
        "```python\nprint('hello')\n```\n\n"
        "> A quote to check blockquote styling.\n\n"
        f"{filler}\n"
    )


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or settings.site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:46em;margin:auto;padding:13px;line-height:1.6;color:#c9c9c9;background:#222}
a{color:#fff}h1,h2,h3{line-height:1.2}table{width:100%;border-collapse:collapse}
td,th{padding:.4em;border-bottom:1px solid #4a4a4a;text-align:left}
input,textarea,select{color:#c9c9c9;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;padding:6px 10px;margin-bottom:10px;box-sizing:border-box}
textarea{width:100%}button{cursor:pointer}.muted{color:#888;font-size:.85em}
.locked{border:1px dashed #888;padding:1.5rem;text-align:center}.flash{background:#4a4a4a;padding:.5rem 1rem}
.watermark{position:fixed;bottom:1rem;right:1rem;opacity:.2;pointer-events:none}
</style>
<nav style="display:flex;gap:1rem;align-items:baseline;">
  <h1 style="margin-right:auto;"><a href="{{ url_for('index') }}" style="text-decoration:none;">{{ settings.site_name }}</a></h1>
  <a href="{{ url_for('about') }}">About</a>
  {% if session.get('logged_in') %}
    <a href="{{ url_for('admin') }}">Admin</a>
    <a href="{{ url_for('logout') }}">Logout</a>
  {% endif %}
</nav>
{% with msgs = get_flashed_messages() %}
  {% for m in msgs %}<p class="flash">{{ m }}</p>{% endfor %}
{% endwith %}
"""

TEMPL_EPILOG = """
{% if settings.watermark_text %}<div class="watermark">{{ settings.watermark_text }}</div>{% endif %}
<footer class="muted" style="margin-top:3rem;">
  <a href="{{ url_for('privacy') }}">Privacy</a> · keyblog {{ version }}
</footer>
</html>
"""


@app.context_processor
def _inject_helpers():
    return {"csrf_token": _csrf_token, "version": __version__}


def _csrf_token() -> str:
    if not session.get("logged_in"):
        return ""
    if "csrf" not in session:
        session["csrf"] = secrets.token_hex(16)
    return session["csrf"]


###############################################################################
# Authentication
###############################################################################
def _digest(value: str | None) -> str:
    return hashlib.sha256((value or "").encode()).hexdigest()


def check_password(settings: dict, password: str | None) -> bool:
    """
    Compare fixed-size digests of both sides.  An unset admin password never
    matches, so a fresh install stays locked until `flask init` ran.
    """
    stored = settings.get("admin_password") or ""
    if not stored:
        return False
    return secrets.compare_digest(_digest(password), _digest(stored))


def verify_totp(secret: str | None, token: str | None) -> bool:
    if not secret or not token:
        return False
    try:
        return pyotp.TOTP(secret).verify(token.strip(), valid_window=1)
    except ValueError:  # not base32
        return False


def login_required() -> None:
    if not session.get("logged_in"):
        abort(403)


def rate_limit(config_key: str, window: int = 60):
    """
    Per-IP sliding window.  The allowance is read from ``app.config`` on every
    call; 0 switches the limit off.
    """
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            max_requests = app.config.get(config_key, 0)
            if not max_requests:
                return view(*args, **kwargs)

            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _start_session() -> None:
    session.clear()
    session.permanent = True
    session["logged_in"] = True
    session["csrf"] = secrets.token_hex(16)


@app.route("/login", methods=["GET", "POST"])
@rate_limit("LOGIN_RATE_LIMIT", window=60)
def login():
    settings = load_settings()
    if request.method == "GET":
        session.pop("pending_2fa", None)
        return render_template_string(TEMPL_LOGIN, settings=settings, error=None)

    # ── second step: one-time code after a correct password ───────
    pending = session.get("pending_2fa")
    if pending and "token" in request.form:
        if time() - pending > PENDING_2FA_TTL:
            session.pop("pending_2fa", None)
            return render_template_string(
                TEMPL_LOGIN, settings=settings, error="Sign-in timed out, start again."
            )
        if verify_totp(settings.get("two_fa_secret"), request.form["token"]):
            _start_session()
            return redirect(url_for("admin"))
        return render_template_string(
            TEMPL_LOGIN_2FA, settings=settings, error="Wrong verification code."
        )

    if not check_password(settings, request.form.get("password")):
        app.logger.warning("Failed admin login from %s", request.remote_addr)
        return render_template_string(
            TEMPL_LOGIN, settings=settings, error="Wrong password."
        )

    if settings.get("two_fa_enabled"):
        session.clear()
        session["pending_2fa"] = int(time())
        return render_template_string(TEMPL_LOGIN_2FA, settings=settings, error=None)

    _start_session()
    return redirect(url_for("admin"))


TEMPL_LOGIN = wrap("""
<hr>
<form method="post" style="max-width:24em;">
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password" style="width:100%;">
  {% if error %}<p style="color:#f88;">{{ error }}</p>{% endif %}
  <button type="submit">Sign in</button>
</form>
""")

TEMPL_LOGIN_2FA = wrap("""
<hr>
<form method="post" style="max-width:24em;">
  <label for="token">Code from your authenticator app</label>
  <input id="token" name="token" inputmode="numeric" autocomplete="one-time-code" autofocus style="width:100%;">
  {% if error %}<p style="color:#f88;">{{ error }}</p>{% endif %}
  <button type="submit">Verify</button>
</form>
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ no logged-in flag yet ⇒ allow (covers /login POST and /api/unlock)
    if not session.get("logged_in"):
        return

    # ➌ for authenticated users we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Public pages
###############################################################################
@app.route("/")
def index():
    settings = load_settings()
    articles = [a for a in get_store().load("articles") if not a.get("hidden")]
    pg = listing.paginate(
        articles,
        listing.to_int(request.args.get("page"), 1),
        listing.to_int(request.args.get("limit"), INDEX_LIMIT),
        default_limit=INDEX_LIMIT,
        min_limit=INDEX_LIMIT_MIN,
        max_limit=INDEX_LIMIT_MAX,
    )
    return render_template_string(
        TEMPL_INDEX,
        settings=settings,
        pg=pg,
        hot=listing.hot_articles(articles, HOT_COUNT),
    )


TEMPL_INDEX = wrap("""
<hr>
{% for a in pg.items %}
  <article>
    <h2><a href="{{ url_for('article_detail', article_id=a.id) }}">{{ a.title }}</a></h2>
    <p class="muted">{{ a.date }} · {{ a.views or 0 }} views</p>
    <p>{{ a.summary }}</p>
  </article>
{% else %}
  <p>No articles yet.</p>
{% endfor %}

{% if pg.pages > 1 %}
<nav style="display:flex;gap:1rem;">
  {% if pg.page > 1 %}<a href="{{ url_for('index', page=pg.page-1, limit=pg.limit) }}">← Newer</a>{% endif %}
  <span class="muted">Page {{ pg.page }} / {{ pg.pages }}</span>
  {% if pg.page < pg.pages %}<a href="{{ url_for('index', page=pg.page+1, limit=pg.limit) }}">Older →</a>{% endif %}
</nav>
{% endif %}

{% if hot %}
<h3>Popular</h3>
<ol>
  {% for a in hot %}
  <li><a href="{{ url_for('article_detail', article_id=a.id) }}">{{ a.title }}</a> <span class="muted">{{ a.views or 0 }}</span></li>
  {% endfor %}
</ol>
{% endif %}
""")


@app.route("/article/<article_id>")
def article_detail(article_id):
    store = get_store()
    with store.locked("articles"):
        articles = store.load("articles")
        article = find_article(articles, article_id)
        if article is None or article.get("hidden"):
            abort(404)
        article["views"] = (article.get("views") or 0) + 1
        store.save("articles", articles)

    settings = load_settings()
    unlocked = unlock_tokens().has_valid_unlock_token(
        request.cookies, article_id, utc_now()
    )
    locked = is_locked(article, settings, unlocked)

    html = Markup("")
    if not locked:
        try:
            html = render_markdown(store.read_content(article_id))
        except ContentMissing:
            app.logger.exception("Content of %s could not be read", article_id)
            html = Markup("<p>Failed to read the article content.</p>")

    return render_template_string(
        TEMPL_ARTICLE,
        settings=settings,
        title=article.get("title"),
        a=article,
        locked=locked,
        html=html,
    )


TEMPL_ARTICLE = wrap("""
<hr>
<article>
  <h2>{{ a.title }}</h2>
  <p class="muted">{{ a.date }} · {{ a.views or 0 }} views</p>
  <p><em>{{ a.summary }}</em></p>
  <div id="content">
  {% if locked %}
    <div class="locked">
      <p>{{ settings.popup_title }}</p>
      {% if settings.wechat_qr_image %}<img src="{{ settings.wechat_qr_image }}" alt="QR code" style="max-width:12em;">{% endif %}
      <form id="unlock-form">
        <input id="key" name="key" placeholder="KM…" autocomplete="off">
        <button type="submit">Unlock</button>
      </form>
      <p id="unlock-msg" style="color:#f88;"></p>
    </div>
  {% else %}
    {{ html }}
  {% endif %}
  </div>
</article>
{% if locked %}
<script>
function deviceFingerprint() {
  let fp = localStorage.getItem("keyblog_fp");
  if (!fp) {
    fp = crypto.randomUUID ? crypto.randomUUID() : String(Math.random()).slice(2);
    localStorage.setItem("keyblog_fp", fp);
  }
  return fp;
}
document.getElementById("unlock-form").onsubmit = async (ev) => {
  ev.preventDefault();
  const headers = {"Content-Type": "application/json"};
  {% if csrf_token() %}headers["X-CSRFToken"] = "{{ csrf_token() }}";{% endif %}
  const res = await fetch("{{ url_for('api_unlock') }}", {
    method: "POST",
    headers,
    body: JSON.stringify({
      article_id: "{{ a.id }}",
      key: document.getElementById("key").value.trim(),
      fingerprint: deviceFingerprint(),
    }),
  });
  const data = await res.json();
  if (data.success) document.getElementById("content").innerHTML = data.content;
  else document.getElementById("unlock-msg").textContent = data.message;
};
</script>
{% endif %}
""")


@app.route("/about")
def about():
    return _static_page("about")


@app.route("/privacy")
def privacy():
    return _static_page("privacy")


def _static_page(name: str):
    text = get_store().read_page(name)
    if text is None and name == "privacy":
        text = PRIVACY_DEFAULT
    return render_template_string(
        TEMPL_PAGE,
        settings=load_settings(),
        title=PAGE_TITLES[name],
        html=render_markdown(text),
    )


TEMPL_PAGE = wrap("""
<hr>
<h2>{{ title }}</h2>
{{ html }}
""")


@app.route("/images/<path:filename>")
def image_file(filename):
    return send_from_directory(get_store().images_dir, filename)


###############################################################################
# Unlock API
###############################################################################
def _denied(reason: Denial):
    return jsonify(success=False, message=reason.message)


def _payload():
    """JSON body when there is one, the form otherwise."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else request.form


@app.route("/api/unlock", methods=["POST"])
@rate_limit("UNLOCK_RATE_LIMIT", window=60)
def api_unlock():
    data = _payload()
    article_id = str(data.get("article_id") or "").strip()
    code = str(data.get("key") or "").strip()
    fingerprint = str(data.get("fingerprint") or "").strip() or None

    store = get_store()
    article = find_article(store.load("articles"), article_id)
    if article is None or article.get("hidden"):
        return _denied(Denial.NOT_FOUND), 404

    settings = load_settings()
    max_devices = listing.to_int(settings.get("max_devices_per_key"), DEFAULT_MAX_DEVICES)
    now = utc_now()

    with store.locked("keys"):
        key_list = store.load("keys")
        outcome = cardkeys.redeem(key_list, code, article_id, fingerprint, now, max_devices)
        if outcome.changed:
            store.save("keys", key_list)
        key = cardkeys.find(key_list, code)

    if not outcome.ok:
        if outcome.reason is Denial.DEVICE_LIMIT_EXCEEDED:
            app.logger.warning("Device limit reached for key %s (max %d)", code, max_devices)
        elif outcome.reason is Denial.KEY_EXPIRED and outcome.changed:
            app.logger.info("Key %s expired", code)
        return _denied(outcome.reason)

    if outcome.changed:
        app.logger.info(
            "Key %s unlocked %s on %d device(s)",
            code,
            article_id,
            len(key.get("fingerprints", [])),
        )

    try:
        body = store.read_content(article_id)
    except ContentMissing:
        app.logger.exception("Content of %s could not be read", article_id)
        return _denied(Denial.CONTENT_READ_FAILURE)

    tokens = unlock_tokens()
    remaining = cardkeys.remaining_seconds(key, now)
    resp = jsonify(success=True, content=str(render_markdown(body)))
    resp.set_cookie(
        tokens.cookie_name(article_id),
        tokens.issue(article_id, cardkeys.parse_ts(key.get("expire_time"))),
        max_age=TOKEN_MAX_AGE if remaining is None else remaining,
        httponly=True,
        samesite="Lax",
        secure=app.config["SESSION_COOKIE_SECURE"],
    )
    return resp


###############################################################################
# Admin dashboard + settings
###############################################################################
@app.route("/admin")
def admin():
    login_required()
    store = get_store()
    settings = load_settings()
    articles = store.load("articles")
    key_list = store.load("keys")

    sort = request.args.get("sort") or "date_desc"
    key_sort = request.args.get("keySort") or "status_desc"
    articles = listing.sort_articles(articles, sort)
    key_list = listing.sort_keys(key_list, key_sort)

    section = request.args.get("section") or (
        "articles"
        if request.args.get("sort") or request.args.get("articlePage")
        else "keys" if request.args.get("keySort") else "dashboard"
    )

    article_pg = listing.paginate(
        articles,
        listing.to_int(request.args.get("articlePage"), 1),
        listing.to_int(request.args.get("articleLimit"), ADMIN_ARTICLE_LIMIT),
        default_limit=ADMIN_ARTICLE_LIMIT,
        max_limit=ADMIN_LIMIT_MAX,
    )
    key_pg = listing.paginate(
        key_list,
        listing.to_int(request.args.get("keyPage"), 1),
        listing.to_int(request.args.get("keyLimit"), ADMIN_KEY_LIMIT),
        default_limit=ADMIN_KEY_LIMIT,
        max_limit=ADMIN_LIMIT_MAX,
    )
    return render_template_string(
        TEMPL_ADMIN,
        settings=settings,
        title="Admin",
        section=section,
        sort=sort,
        key_sort=key_sort,
        article_pg=article_pg,
        key_pg=key_pg,
        titles={a.get("id"): a.get("title") for a in articles},
        article_sorts=listing.ARTICLE_SORTS,
        key_sorts=listing.KEY_SORTS,
    )


TEMPL_ADMIN = wrap("""
<hr>
<nav style="display:flex;gap:1rem;">
  {% for s in ("dashboard", "articles", "keys") %}
    <a href="{{ url_for('admin', section=s) }}" {% if s == section %}style="font-weight:700;"{% endif %}>{{ s|capitalize }}</a>
  {% endfor %}
  <a href="{{ url_for('edit_page', name='about') }}">About page</a>
  <a href="{{ url_for('edit_page', name='privacy') }}">Privacy page</a>
  <a href="{{ url_for('guide') }}">Guide</a>
</nav>

{% if section == "dashboard" %}
<h2>Settings</h2>
<form method="post" action="{{ url_for('update_settings') }}" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label>Site name <input name="site_name" value="{{ settings.site_name }}"></label>
  <label>New password <input name="admin_password" type="password" placeholder="leave empty to keep"></label>
  <label>Popup title <input name="popup_title" value="{{ settings.popup_title }}"></label>
  <label>Watermark <input name="watermark_text" value="{{ settings.watermark_text }}"></label>
  <label>Default key duration (hours) <input name="default_key_duration_hours" value="{{ settings.default_key_duration_hours }}"></label>
  <label>Max devices per key <input name="max_devices_per_key" value="{{ settings.max_devices_per_key }}"></label>
  <label><input type="checkbox" name="enable_key_verification" {% if settings.enable_key_verification %}checked{% endif %}> Require keys</label>
  <label>QR image <input type="file" name="qr_image" accept="image/*"></label>
  <button type="submit">Save</button>
</form>

<h2>Two-factor authentication</h2>
{% if settings.two_fa_enabled %}
  <form method="post" action="{{ url_for('twofa_disable') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit">Disable 2FA</button>
  </form>
{% else %}
  <button id="twofa-setup" type="button">Set up 2FA</button>
  <div id="twofa-box" style="display:none;">
    <img id="twofa-qr" alt="2FA QR" style="background:#fff;max-width:12em;">
    <p class="muted" id="twofa-secret"></p>
    <input id="twofa-token" inputmode="numeric" placeholder="123456">
    <button id="twofa-verify" type="button">Verify + enable</button>
  </div>
  <script>
  let twofaSecret = null;
  document.getElementById("twofa-setup").onclick = async () => {
    const data = await (await fetch("{{ url_for('twofa_setup') }}")).json();
    twofaSecret = data.secret;
    document.getElementById("twofa-qr").src = data.qr_code;
    document.getElementById("twofa-secret").textContent = data.secret;
    document.getElementById("twofa-box").style.display = "block";
  };
  document.getElementById("twofa-verify").onclick = async () => {
    const res = await fetch("{{ url_for('twofa_verify') }}", {
      method: "POST",
      headers: {"Content-Type": "application/json", "X-CSRFToken": "{{ csrf_token() }}"},
      body: JSON.stringify({secret: twofaSecret, token: document.getElementById("twofa-token").value}),
    });
    const data = await res.json();
    if (data.success) location.reload(); else alert(data.message);
  };
  </script>
{% endif %}
{% endif %}

{% if section == "articles" %}
<h2>Articles <a href="{{ url_for('new_article') }}" style="font-size:.6em;">+ new</a></h2>
<p class="muted">Sort:
  {% for s in article_sorts %}
    <a href="{{ url_for('admin', section='articles', sort=s, articleLimit=article_pg.limit) }}" {% if s == sort %}style="font-weight:700;"{% endif %}>{{ s }}</a>
  {% endfor %}
</p>
<table>
  <tr><th>Title</th><th>Date</th><th>Views</th><th>Hidden</th><th>Key</th><th></th></tr>
  {% for a in article_pg.items %}
  <tr>
    <td><a href="{{ url_for('edit_article', article_id=a.id) }}">{{ a.title }}</a></td>
    <td>{{ a.date }}</td>
    <td>{{ a.views or 0 }}</td>
    <td><button type="button" onclick="toggleArticle('{{ url_for('toggle_visibility', article_id=a.id) }}')">{{ "yes" if a.hidden else "no" }}</button></td>
    <td><button type="button" onclick="toggleArticle('{{ url_for('toggle_key_requirement', article_id=a.id) }}')">{{ "no" if a.requiresKey is false else "yes" }}</button></td>
    <td>
      <form method="post" action="{{ url_for('delete_article', article_id=a.id, page=article_pg.page, limit=article_pg.limit, sort=sort) }}"
            onsubmit="return confirm('Delete this article?');">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit">Delete</button>
      </form>
    </td>
  </tr>
  {% endfor %}
</table>
<p class="muted">
  {% if article_pg.page > 1 %}<a href="{{ url_for('admin', section='articles', sort=sort, articlePage=article_pg.page-1, articleLimit=article_pg.limit) }}">←</a>{% endif %}
  Page {{ article_pg.page }} / {{ article_pg.pages or 1 }} · {{ article_pg.total }} articles
  {% if article_pg.page < article_pg.pages %}<a href="{{ url_for('admin', section='articles', sort=sort, articlePage=article_pg.page+1, articleLimit=article_pg.limit) }}">→</a>{% endif %}
</p>
<script>
async function toggleArticle(url) {
  const res = await fetch(url, {method: "POST", headers: {"X-CSRFToken": "{{ csrf_token() }}"}});
  const data = await res.json();
  if (data.success) location.reload(); else alert(data.message);
}
</script>
{% endif %}

{% if section == "keys" %}
<h2>Keys</h2>
<form method="post" action="{{ url_for('generate_keys') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input name="count" value="1" size="4"> keys valid for
  <input name="duration" value="{{ settings.default_key_duration_hours }}" size="5"> hours (-1 = unlimited)
  <button type="submit">Generate</button>
</form>
<p class="muted">Sort:
  {% for s in key_sorts %}
    <a href="{{ url_for('admin', section='keys', keySort=s, keyLimit=key_pg.limit) }}" {% if s == key_sort %}style="font-weight:700;"{% endif %}>{{ s }}</a>
  {% endfor %}
</p>
<table>
  <tr><th>Code</th><th>Status</th><th>Hours</th><th>Article</th><th>Devices</th><th>Created</th><th>Expires</th><th></th></tr>
  {% for k in key_pg.items %}
  <tr>
    <td><code>{{ k.code }}</code></td>
    <td>{{ k.status }}</td>
    <td>{{ "∞" if k.duration_hours == -1 else k.duration_hours }}</td>
    <td>{% if k.bound_article_id %}{{ titles.get(k.bound_article_id, "(deleted)") }}{% else %}–{% endif %}</td>
    <td>{{ (k.fingerprints or [])|length }}</td>
    <td>{{ k.create_time|ts }}</td>
    <td>{{ k.expire_time|ts }}</td>
    <td><button type="button" onclick="deleteKey('{{ k.code }}')">Delete</button></td>
  </tr>
  {% endfor %}
</table>
<p class="muted">
  {% if key_pg.page > 1 %}<a href="{{ url_for('admin', section='keys', keySort=key_sort, keyPage=key_pg.page-1, keyLimit=key_pg.limit) }}">←</a>{% endif %}
  Page {{ key_pg.page }} / {{ key_pg.pages or 1 }} · {{ key_pg.total }} keys
  {% if key_pg.page < key_pg.pages %}<a href="{{ url_for('admin', section='keys', keySort=key_sort, keyPage=key_pg.page+1, keyLimit=key_pg.limit) }}">→</a>{% endif %}
</p>
<script>
async function deleteKey(code) {
  if (!confirm("Delete key " + code + "?")) return;
  const res = await fetch("/admin/keys/delete/" + encodeURIComponent(code), {
    method: "POST", headers: {"X-CSRFToken": "{{ csrf_token() }}"},
  });
  const data = await res.json();
  if (data.success) location.reload(); else alert(data.message);
}
</script>
{% endif %}
""")


@app.route("/admin/settings", methods=["POST"])
def update_settings():
    login_required()
    store = get_store()
    form = request.form

    with store.editing("settings") as stored:
        stored["site_name"] = form.get("site_name", "").strip() or DEFAULT_SETTINGS["site_name"]
        if form.get("admin_password"):
            stored["admin_password"] = form["admin_password"]
        stored["popup_title"] = form.get("popup_title", "")
        stored["watermark_text"] = form.get("watermark_text", "")
        stored["default_key_duration_hours"] = listing.to_int(
            form.get("default_key_duration_hours"), DEFAULT_DURATION
        )
        stored["max_devices_per_key"] = listing.to_int(
            form.get("max_devices_per_key"), DEFAULT_MAX_DEVICES
        )
        stored["enable_key_verification"] = form.get("enable_key_verification") == "on"

        qr_url = _save_qr_image(request.files.get("qr_image"))
        if qr_url:
            stored["wechat_qr_image"] = qr_url

    flash("Settings saved.")
    return redirect(url_for("admin"))


def _save_qr_image(f) -> str | None:
    """Store an uploaded QR image under a fixed name; return its URL."""
    if f is None or not f.filename:
        return None
    if (f.mimetype or "").lower() not in IMAGE_MIMES:
        flash("Only image uploads are allowed.")
        return None

    images = get_store().images_dir
    images.mkdir(parents=True, exist_ok=True)
    for old in images.glob(f"{QR_STEM}.*"):
        old.unlink()
    ext = Path(secure_filename(f.filename)).suffix.lower() or ".png"
    f.save(images / f"{QR_STEM}{ext}")
    return url_for("image_file", filename=f"{QR_STEM}{ext}") + f"?v={int(time() * 1000)}"


# ──── two-factor ──────────────────────────────────────────────────
def qr_data_url(payload: str) -> str:
    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    return "data:image/svg+xml;base64," + base64.b64encode(buf.getvalue()).decode()


@app.route("/admin/2fa/setup")
def twofa_setup():
    login_required()
    secret = pyotp.random_base32()
    uri = pyotp.TOTP(secret).provisioning_uri(
        name="admin", issuer_name=load_settings()["site_name"]
    )
    return jsonify(secret=secret, qr_code=qr_data_url(uri))


@app.route("/admin/2fa/verify", methods=["POST"])
def twofa_verify():
    login_required()
    data = _payload()
    secret = str(data.get("secret") or "").strip()
    if not verify_totp(secret, str(data.get("token") or "")):
        return jsonify(success=False, message="Wrong verification code.")

    with get_store().editing("settings") as stored:
        stored["two_fa_secret"] = secret
        stored["two_fa_enabled"] = True
    app.logger.info("Two-factor authentication enabled")
    return jsonify(success=True)


@app.route("/admin/2fa/disable", methods=["POST"])
def twofa_disable():
    login_required()
    with get_store().editing("settings") as stored:
        stored["two_fa_enabled"] = False
        stored.pop("two_fa_secret", None)
    app.logger.info("Two-factor authentication disabled")
    return redirect(url_for("admin"))


###############################################################################
# Keys
###############################################################################
@app.route("/admin/keys/generate", methods=["POST"])
def generate_keys():
    login_required()
    try:
        duration = int(request.form.get("duration", "").strip())
    except ValueError:
        duration = cardkeys.UNLIMITED
    count = listing.to_int(request.form.get("count"), 1)
    try:
        cardkeys.check_duration(duration)
    except ValueError:
        flash(f"Duration must be -1 or between 1 and {cardkeys.MAX_DURATION_HOURS} hours.")
        return redirect(url_for("admin", section="keys"))

    with get_store().editing("keys") as key_list:
        fresh = cardkeys.generate(key_list, count, duration, utc_now())
    app.logger.info("Generated %d keys (%d h)", len(fresh), duration)
    return redirect(url_for("admin", section="keys"))


@app.route("/admin/keys/delete/<code>", methods=["POST"])
def delete_key(code):
    login_required()
    code = code.strip()
    store = get_store()
    article_ids = [a.get("id") for a in store.load("articles")]

    with store.locked("keys"):
        key_list = store.load("keys")
        try:
            remaining = cardkeys.delete(key_list, code, article_ids)
        except KeyNotFound:
            app.logger.warning("Key not found: %s", code)
            return jsonify(success=False, message="Key not found."), 404
        except KeyInUse:
            app.logger.warning("Refusing to delete used key %s", code)
            return jsonify(success=False, message="Used keys cannot be deleted."), 403
        store.save("keys", remaining)

    app.logger.info("Deleted key %s", code)
    return jsonify(success=True)


###############################################################################
# Articles
###############################################################################
@app.route("/admin/article/new")
def new_article():
    login_required()
    return render_template_string(
        TEMPL_EDITOR, settings=load_settings(), title="New article", a={}, content=""
    )


@app.route("/admin/article/edit/<article_id>")
def edit_article(article_id):
    login_required()
    store = get_store()
    article = find_article(store.load("articles"), article_id)
    if article is None:
        abort(404)
    try:
        content = store.read_content(article_id)
    except ContentMissing:
        content = ""
    return render_template_string(
        TEMPL_EDITOR,
        settings=load_settings(),
        title=article.get("title"),
        a=article,
        content=content,
    )


TEMPL_EDITOR = wrap("""
<hr>
<form method="post" action="{{ url_for('save_article') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="id" value="{{ a.id or '' }}">
  <label>Title <input name="title" value="{{ a.title or '' }}" style="width:100%;"></label>
  <label>Summary <textarea name="summary" rows="3">{{ a.summary or '' }}</textarea></label>
  <label>Body (markdown) <textarea name="content" rows="20">{{ content }}</textarea></label>
  <label><input type="checkbox" name="hidden" {% if a.hidden %}checked{% endif %}> Hidden</label>
  <label><input type="checkbox" name="requiresKey" {% if a.requiresKey is not false %}checked{% endif %}> Requires a key</label>
  <button type="submit">Save</button>
</form>
""")


@app.route("/admin/article/save", methods=["POST"])
def save_article():
    login_required()
    form = request.form
    article_id = form.get("id", "").strip()
    fields = {
        "title": form.get("title", "").strip(),
        "summary": form.get("summary", "").strip(),
        "hidden": form.get("hidden") == "on",
        "requiresKey": form.get("requiresKey") == "on",
    }
    store = get_store()

    with store.editing("articles") as articles:
        if article_id:
            article = find_article(articles, article_id)
            if article is None:
                abort(404)
            article.update(fields)
        else:
            now = utc_now()
            article_id = new_article_id(now, {a.get("id") for a in articles})
            articles.insert(
                0, {"id": article_id, **fields, "date": now.date().isoformat(), "views": 0}
            )

    store.write_content(article_id, form.get("content", ""))
    flash("Article saved.")
    return redirect(url_for("admin", section="articles"))


def _toggle(article_id: str, field: str, default: bool):
    login_required()
    store = get_store()
    with store.locked("articles"):
        articles = store.load("articles")
        article = find_article(articles, article_id)
        if article is None:
            return jsonify(success=False, message="Article not found."), 404
        article[field] = not article.get(field, default)
        store.save("articles", articles)
    return jsonify(success=True, **{field: article[field]})


@app.route("/admin/article/<article_id>/toggle-visibility", methods=["POST"])
def toggle_visibility(article_id):
    return _toggle(article_id, "hidden", False)


@app.route("/admin/article/<article_id>/toggle-key-requirement", methods=["POST"])
def toggle_key_requirement(article_id):
    return _toggle(article_id, "requiresKey", True)


@app.route("/admin/article/<article_id>/delete", methods=["POST"])
def delete_article(article_id):
    login_required()
    store = get_store()
    with store.editing("articles") as articles:
        articles[:] = [a for a in articles if a.get("id") != article_id]
    if not store.delete_content(article_id):
        app.logger.warning("No content file to delete for %s", article_id)

    return redirect(
        url_for(
            "admin",
            section="articles",
            articlePage=listing.to_int(request.args.get("page"), 1),
            articleLimit=listing.to_int(request.args.get("limit"), ADMIN_ARTICLE_LIMIT),
            sort=request.args.get("sort") or "date_desc",
        )
    )


###############################################################################
# Static pages
###############################################################################
@app.route("/admin/page/<name>", methods=["GET", "POST"])
def edit_page(name):
    login_required()
    if name not in PAGE_TITLES:
        abort(404)
    store = get_store()

    if request.method == "POST":
        store.write_page(name, request.form.get("content", ""))
        flash(f"{PAGE_TITLES[name]} saved.")
        return redirect(url_for("admin"))

    return render_template_string(
        TEMPL_PAGE_EDITOR,
        settings=load_settings(),
        title=PAGE_TITLES[name],
        name=name,
        content=store.read_page(name) or "",
    )


@app.route("/admin/guide")
def guide():
    login_required()
    text = GUIDE_FILE.read_text(encoding="utf-8") if GUIDE_FILE.exists() else ""
    return render_template_string(
        TEMPL_PAGE, settings=load_settings(), title="Admin guide", html=render_markdown(text)
    )


TEMPL_PAGE_EDITOR = wrap("""
<hr>
<h2>{{ title }}</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <textarea name="content" rows="24">{{ content }}</textarea>
  <button type="submit">Save</button>
</form>
""")


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, settings=load_settings(), title=None), 404


@app.errorhandler(CorruptCollection)
def corrupt_collection(exc):
    app.logger.error("Write refused: %s", exc)
    return render_template_string(TEMPL_503, settings=dict(DEFAULT_SETTINGS), title=None), 503


@app.errorhandler(500)
def internal_error(exc):
    app.logger.error("Unhandled error: %s", exc)
    return render_template_string(TEMPL_500, settings=load_settings(), title=None), 500


TEMPL_404 = wrap("""
<hr>
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist. <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
""")

TEMPL_503 = wrap("""
<hr>
<h2>Storage unavailable</h2>
<p>A data file is damaged, so nothing was saved. The administrator has to repair it first.</p>
""")

TEMPL_500 = wrap("""
<hr>
<h2>Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True, port=int(os.environ.get("PORT", "3001")))
