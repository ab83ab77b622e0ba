

import atexit
import hmac
import json
import logging
import os
import secrets
from pathlib import Path

import click
from flask import (
    Blueprint,
    Flask,
    current_app,
    jsonify,
    make_response,
    redirect,
    render_template_string,
    request,
)
from flask.cli import with_appcontext
from markupsafe import Markup
from werkzeug.exceptions import HTTPException

from auth import get_session, is_local_path, sign_in, sign_out
from blog import BlogSource, get_post, get_posts, get_static_paths, hydrate, render_markdown
from errors import DocumentNotFound, FolderNotFound, NotFoundError, PreviewRedirectError
from pages import Unauthenticated, props_to_dict, resolve_app_props, select_view
from preview import clear_preview, enable_preview, is_preview, validate_preview_route
from store import (
    Database,
    create_document,
    create_folder,
    create_user,
    get_document_by_id,
    get_folder,
    get_user_by_email,
    update_document,
    verify_user,
)

BASE_DIR = Path(__file__).resolve().parent

_CONFIG_PATH = Path(os.environ.get("KNOWN_CONFIG") or BASE_DIR / "known.config.json")
DEFAULTS = {
    "port": 8000,
    "host": "127.0.0.1",
    "secret_key": None,
    "database_url": "sqlite:///known.db",
    "posts_dir": "posts",
    "cms_path": "cms.json",
    "blog_fallback": "true",
    "preview_routes": ["/blog"],
    "preview_secret": None,
    "preview_max_age": 3600,
    "log_level": "INFO",
}
FALLBACK_MODES = {"true": True, "blocking": "blocking", "false": False}
MAX_NAME_LENGTH = 200

logger = logging.getLogger(__name__)

bp = Blueprint("known", __name__)


def load_config(path: Path = None) -> dict:
    path = Path(path or _CONFIG_PATH)
    cfg = dict(DEFAULTS)
    if path.is_file():
        try:
            with open(path, encoding="utf-8") as f:
                user = json.load(f)
            cfg.update(user)
        except (OSError, ValueError) as e:
            logger.warning("could not load %s: %s", path.name, e)
    if os.environ.get("KNOWN_SECRET_KEY"):
        cfg["secret_key"] = os.environ["KNOWN_SECRET_KEY"]
    for key in ("posts_dir", "cms_path"):
        value = Path(cfg[key])
        cfg[key] = value if value.is_absolute() else path.parent / value
    return cfg


def configure_logging(level: str = "INFO") -> None:
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    root = logging.getLogger()
    if root.handlers:
        for handler in root.handlers:
            handler.setFormatter(formatter)
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))


def create_app(config: dict = None) -> Flask:
    cfg = load_config()
    if config:
        cfg.update(config)
    for key in ("posts_dir", "cms_path"):
        cfg[key] = Path(cfg[key])
    if str(cfg["blog_fallback"]).lower() not in FALLBACK_MODES:
        raise ValueError(f"blog_fallback must be one of {', '.join(FALLBACK_MODES)}")
    if not cfg["secret_key"]:
        logger.warning("no secret_key configured; sessions will not survive a restart")
        cfg["secret_key"] = secrets.token_urlsafe(32)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = cfg["secret_key"]
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["KNOWN"] = cfg
    app.logger.setLevel(getattr(logging, str(cfg["log_level"]).upper(), logging.INFO))

    app.extensions["known.db"] = Database.open(cfg["database_url"])
    app.extensions["known.blog"] = BlogSource.load(cfg["posts_dir"], cfg["cms_path"])

    app.register_blueprint(bp)
    app.register_error_handler(NotFoundError, _handle_not_found)
    app.register_error_handler(PreviewRedirectError, _handle_preview_redirect)
    app.register_error_handler(Exception, _handle_unexpected)
    app.cli.add_command(create_user_command)
    return app


def _cfg() -> dict:
    return current_app.config["KNOWN"]


def _db() -> Database:
    return current_app.extensions["known.db"]


def _blog() -> BlogSource:
    return current_app.extensions["known.blog"]


def _wants_json() -> bool:
    return request.path.startswith("/api/") or request.args.get("format") == "json"


def _previewing() -> bool:
    cfg = _cfg()
    return is_preview(request.cookies, current_app.config["SECRET_KEY"], int(cfg["preview_max_age"]))


def _fallback_mode():
    return FALLBACK_MODES[str(_cfg()["blog_fallback"]).lower()]


def _clean_name(value) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or len(value) > MAX_NAME_LENGTH:
        return None
    return value


# --- error fallback ---

def _handle_not_found(e: NotFoundError):
    current_app.logger.info("not found: %s %s (%s)", request.method, request.path, e.message)
    if _wants_json():
        return jsonify({"error": "not found"}), 404
    return render_template_string(NOT_FOUND_TEMPLATE), 404


def _handle_preview_redirect(e: PreviewRedirectError):
    current_app.logger.warning("rejected preview route %r: %s", e.route, e.reason)
    return jsonify({"error": e.reason}), 400


def _handle_unexpected(e: Exception):
    if isinstance(e, HTTPException):
        return e
    current_app.logger.exception("unhandled error on %s %s", request.method, request.path)
    return "", 500


# --- auth ---

@bp.route("/")
def index():
    return redirect("/blog")


@bp.route("/signin", methods=["GET", "POST"])
def signin():
    next_url = request.values.get("next", "")
    if request.method == "GET":
        return render_template_string(SIGNIN_TEMPLATE, next_url=next_url, error=None)
    email = request.form.get("email", "")
    password = request.form.get("password", "")
    user = verify_user(_db(), email, password) if email and password else None
    if user is None:
        return render_template_string(SIGNIN_TEMPLATE, next_url=next_url,
                                      error="Invalid email or password"), 401
    sign_in(user)
    current_app.logger.info("user %s signed in", user.id)
    return redirect(next_url if is_local_path(next_url) else "/app")


@bp.route("/signout", methods=["GET", "POST"])
def signout():
    sign_out()
    return redirect("/signin")


@click.command("create-user")
@click.argument("name")
@click.argument("email")
@click.password_option()
@with_appcontext
def create_user_command(name, email, password):
    db = _db()
    if get_user_by_email(db, email) is not None:
        raise click.ClickException(f"a user with email {email} already exists")
    user = create_user(db, name, email, password)
    click.echo(f"Created user {user.email} ({user.id})")


# --- folders and documents ---

@bp.route("/app", defaults={"segments": ""}, methods=["GET", "POST"])
@bp.route("/app/<path:segments>", methods=["GET", "POST"])
def app_page(segments):
    db = _db()
    props = resolve_app_props(db, get_session(db), segments.split("/"))
    if request.args.get("format") == "json":
        return jsonify(props_to_dict(props))
    view = select_view(props)
    if isinstance(props, Unauthenticated):
        return render_template_string(SESSION_EXPIRED_TEMPLATE, next_url=request.path)
    doc_html = None
    if view == "document":
        doc_html = Markup(render_markdown(props.document.content, escape_html=True))
    return render_template_string(APP_TEMPLATE, props=props, view=view, doc_html=doc_html)


def _require_session():
    session = get_session(_db())
    if session is None:
        return None, (jsonify({"error": "sign in required"}), 401)
    return session, None


@bp.route("/api/folders", methods=["POST"])
def api_folders_create():
    session, denied = _require_session()
    if denied:
        return denied
    body = request.get_json(silent=True) or {}
    name = _clean_name(body.get("name"))
    if name is None:
        return jsonify({"error": "name is required"}), 400
    folder = create_folder(_db(), session.user.id, name)
    current_app.logger.info("user %s created folder %s", session.user.id, folder.id)
    return jsonify(folder.to_dict()), 201


@bp.route("/api/docs", methods=["POST"])
def api_docs_create():
    session, denied = _require_session()
    if denied:
        return denied
    body = request.get_json(silent=True) or {}
    name = _clean_name(body.get("name"))
    content = body.get("content", "")
    if name is None or not isinstance(content, str):
        return jsonify({"error": "name is required and content must be text"}), 400
    folder_id = str(body.get("folderId", ""))
    if get_folder(_db(), session.user.id, folder_id) is None:
        raise FolderNotFound(folder_id, owner_id=session.user.id)
    doc = create_document(_db(), folder_id, name, content)
    return jsonify(doc.to_dict()), 201


@bp.route("/api/docs/<doc_id>", methods=["PUT"])
def api_docs_update(doc_id):
    session, denied = _require_session()
    if denied:
        return denied
    db = _db()
    doc = get_document_by_id(db, doc_id)
    if doc is None or get_folder(db, session.user.id, doc.folder_id) is None:
        raise DocumentNotFound(doc_id, owner_id=session.user.id)
    body = request.get_json(silent=True) or {}
    name = body.get("name")
    content = body.get("content")
    if name is not None:
        name = _clean_name(name)
        if name is None:
            return jsonify({"error": "invalid name"}), 400
    if content is not None and not isinstance(content, str):
        return jsonify({"error": "content must be text"}), 400
    doc = update_document(db, doc_id, name=name, content=content)
    if doc is None:
        raise DocumentNotFound(doc_id)
    return jsonify(doc.to_dict())


# --- blog ---

@bp.route("/blog")
def blog_index():
    posts = get_posts(_blog())
    if request.args.get("format") == "json":
        return jsonify({"posts": posts})
    return render_template_string(BLOG_INDEX_TEMPLATE, posts=posts)


def _static_slugs() -> set:
    return {p["params"]["slug"] for p in get_static_paths(_blog())["paths"]}


@bp.route("/blog/<slug>")
def blog_post(slug):
    preview = _previewing()
    fallback = _fallback_mode()
    # preview and blocking mode render on request, like an uncached page
    if not preview and fallback != "blocking" and slug not in _static_slugs():
        if fallback is False:
            raise NotFoundError(f"post {slug!r} was not generated", slug=slug)
        return render_template_string(POST_FALLBACK_TEMPLATE, slug=slug)
    post = get_post(_blog(), slug, preview=preview)
    return render_template_string(POST_TEMPLATE, post=post, content=hydrate(post.source), preview=preview)


@bp.route("/api/blog/<slug>")
def api_blog_post(slug):
    post = get_post(_blog(), slug, preview=_previewing())
    return jsonify(post.to_dict())


@bp.route("/api/preview")
def api_preview():
    cfg = _cfg()
    expected = cfg.get("preview_secret")
    given = request.args.get("secret", "")
    if expected and not hmac.compare_digest(str(expected).encode(), given.encode()):
        return jsonify({"error": "invalid token"}), 401
    route = validate_preview_route(request.args.get("route"), cfg["preview_routes"])
    resp = make_response(redirect(route))
    enable_preview(resp, current_app.config["SECRET_KEY"], int(cfg["preview_max_age"]))
    current_app.logger.info("preview enabled, redirecting to %s", route)
    return resp


@bp.route("/api/exit-preview")
def api_exit_preview():
    route = request.args.get("route") or "/blog"
    route = validate_preview_route(route, _cfg()["preview_routes"])
    return clear_preview(make_response(redirect(route)))


_HEAD = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
"""

_STYLE = r"""<style>
*, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }
:root {
  --bg-primary: #1a1a2e;
  --bg-secondary: #16162a;
  --bg-tertiary: #1f1f3a;
  --bg-hover: rgba(134,112,255,.08);
  --text: #e0def4;
  --text-muted: #908caa;
  --text-faint: #6e6a86;
  --accent: #8673ff;
  --accent-hover: #a48fff;
  --border: rgba(255,255,255,.06);
  --sidebar-width: 300px;
  --font: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Inter', Roboto, sans-serif;
  --font-mono: 'Fira Code', 'JetBrains Mono', 'Consolas', monospace;
  --radius: 4px;
}
html, body { min-height: 100%; background: var(--bg-primary); color: var(--text); font-family: var(--font); font-size: 16px; line-height: 1.6; }
a { color: var(--accent); text-decoration: none; }
a:hover { color: var(--accent-hover); }
.app { display: flex; height: 100vh; overflow: hidden; }
.sidebar { width: var(--sidebar-width); background: var(--bg-secondary); border-right: 1px solid var(--border); display: flex; flex-direction: column; }
.sidebar-header { padding: 16px; display: flex; align-items: center; justify-content: space-between; border-bottom: 1px solid var(--border); }
.logo { font-weight: 700; letter-spacing: .08em; text-transform: uppercase; font-size: 13px; }
.folder-list { list-style: none; overflow-y: auto; padding: 6px 0; }
.folder-list a { display: block; padding: 4px 16px; color: var(--text-muted); font-size: 14px; }
.folder-list a.active, .folder-list a:hover { background: var(--bg-hover); color: var(--text); }
.main { flex: 1; overflow-y: auto; position: relative; padding: 48px 64px; }
.user { position: absolute; top: 12px; right: 24px; font-size: 13px; color: var(--text-faint); }
.pane h1 { font-size: 28px; margin-bottom: 16px; }
.doc-list { list-style: none; }
.doc-list li { padding: 6px 0; border-bottom: 1px solid var(--border); }
.breadcrumb { font-size: 12px; color: var(--text-faint); margin-bottom: 8px; }
.content h1, .content h2, .content h3 { margin: 1.2em 0 .5em; }
.content p, .content ul, .content ol, .content pre { margin-bottom: 1em; }
.content code { font-family: var(--font-mono); background: var(--bg-tertiary); padding: 1px 4px; border-radius: var(--radius); }
.content pre { background: var(--bg-tertiary); padding: 12px; border-radius: var(--radius); overflow-x: auto; }
.container { max-width: 760px; margin: 0 auto; padding: 32px 24px; }
.nav { display: flex; gap: 16px; padding: 16px 24px; border-bottom: 1px solid var(--border); }
.post-preview { margin: 40px 0; }
.post-preview p { color: var(--text-muted); }
.post-title { font-size: clamp(2rem, 8vw, 6rem); line-height: 1.1; margin: 24px 0; }
.banner { background: var(--bg-tertiary); padding: 6px 24px; font-size: 13px; }
.dialog { max-width: 360px; margin: 20vh auto; background: var(--bg-secondary); padding: 24px; border-radius: 8px; border: 1px solid var(--border); }
.dialog h2 { font-size: 18px; margin-bottom: 8px; }
.dialog p { color: var(--text-muted); margin-bottom: 16px; }
.btn { background: var(--accent); color: #fff; border: none; padding: 6px 16px; border-radius: var(--radius); cursor: pointer; font-size: 14px; display: inline-block; }
.btn:hover { background: var(--accent-hover); color: #fff; }
input[type=text], input[type=email], input[type=password] { width: 100%; padding: 6px 8px; margin-bottom: 12px; background: var(--bg-primary); color: var(--text); border: 1px solid var(--border); border-radius: var(--radius); }
.error { color: #eb6f92; margin-bottom: 12px; font-size: 14px; }
.spinner { width: 48px; height: 48px; margin: 30vh auto; border: 4px solid var(--border); border-top-color: var(--accent); border-radius: 50%; animation: spin 1s linear infinite; }
@keyframes spin { to { transform: rotate(360deg); } }
</style>
"""

_BLOG_NAV = r"""<header class="nav"><a href="/">Home</a><a href="/blog">Blog</a><a href="/app">Notes</a></header>
"""

SESSION_EXPIRED_TEMPLATE = _HEAD + r"""<title>Known</title>
""" + _STYLE + r"""</head>
<body>
<div class="dialog" role="dialog">
  <h2>Session expired</h2>
  <p>Sign in to continue</p>
  <a class="btn" href="/signin?next={{ next_url | urlencode }}">Ok</a>
</div>
</body>
</html>
"""

SIGNIN_TEMPLATE = _HEAD + r"""<title>Known | Sign in</title>
""" + _STYLE + r"""</head>
<body>
<form class="dialog" method="post" action="/signin">
  <h2>Sign in</h2>
  {% if error %}<div class="error">{{ error }}</div>{% endif %}
  <input type="hidden" name="next" value="{{ next_url }}">
  <input type="email" name="email" placeholder="Email" required autofocus>
  <input type="password" name="password" placeholder="Password" required>
  <button class="btn" type="submit">Sign in</button>
</form>
</body>
</html>
"""

APP_TEMPLATE = _HEAD + r"""<title>Known{% if props.folder is defined %} | {{ props.folder.name }}{% endif %}</title>
""" + _STYLE + r"""</head>
<body>
<div class="app">
  <aside class="sidebar">
    <div class="sidebar-header">
      <a class="logo" href="/app">Known</a>
      <button class="btn" id="newFolderBtn" type="button">New folder</button>
    </div>
    <ul class="folder-list">
      {% for f in props.folders %}
      <li><a href="/app/{{ f.id }}"{% if props.folder is defined and props.folder.id == f.id %} class="active"{% endif %}>{{ f.name }}</a></li>
      {% endfor %}
    </ul>
  </aside>
  <main class="main">
    <div class="user">{{ props.session.user.name or props.session.user.email }} &middot; <a href="/signout">Sign out</a></div>
    {% if view == "document" %}
    <section class="pane">
      <div class="breadcrumb"><a href="/app/{{ props.folder.id }}">{{ props.folder.name }}</a> / {{ props.document.name }}</div>
      <h1>{{ props.document.name }}</h1>
      <article class="content">{{ doc_html }}</article>
    </section>
    {% elif view == "folder" %}
    <section class="pane">
      <h1>{{ props.folder.name }}</h1>
      <ul class="doc-list">
        {% for d in props.documents %}
        <li><a href="/app/{{ props.folder.id }}/{{ d.id }}">{{ d.name }}</a></li>
        {% else %}
        <li>No documents yet.</li>
        {% endfor %}
      </ul>
      <p style="margin-top:16px"><button class="btn" id="newDocBtn" type="button" data-folder="{{ props.folder.id }}">New document</button></p>
    </section>
    {% endif %}
  </main>
</div>
<script>
async function post(url, body) {
  const res = await fetch(url, {method: 'POST', headers: {'Content-Type': 'application/json'}, body: JSON.stringify(body)});
  if (!res.ok) { alert((await res.json()).error || 'Request failed'); return null; }
  return res.json();
}
document.getElementById('newFolderBtn').addEventListener('click', async () => {
  const name = prompt('Folder name');
  if (!name) return;
  const folder = await post('/api/folders', {name});
  if (folder) window.location.href = '/app/' + folder.id;
});
const newDocBtn = document.getElementById('newDocBtn');
if (newDocBtn) newDocBtn.addEventListener('click', async () => {
  const name = prompt('Document name');
  if (!name) return;
  const doc = await post('/api/docs', {name, folderId: newDocBtn.dataset.folder});
  if (doc) window.location.href = '/app/' + doc.folder_id + '/' + doc.id;
});
</script>
</body>
</html>
"""

BLOG_INDEX_TEMPLATE = _HEAD + r"""<title>Known Blog</title>
""" + _STYLE + r"""</head>
<body>
""" + _BLOG_NAV + r"""<main class="container">
  {% for post in posts %}
  <article class="post-preview">
    <h2><a href="/blog/{{ post.slug }}">{{ post.title }}</a></h2>
    {% if post.summary %}<p>{{ post.summary }}</p>{% endif %}
  </article>
  {% endfor %}
</main>
</body>
</html>
"""

POST_TEMPLATE = _HEAD + r"""<title>Known Blog | {{ post.front_matter.title or 'default title' }}</title>
<meta name="description" content="{{ post.front_matter.summary or 'summary' }}">
""" + _STYLE + r"""</head>
<body>
{% if preview %}<div class="banner">Preview mode &middot; <a href="/api/exit-preview">Exit preview</a></div>{% endif %}
""" + _BLOG_NAV + r"""<main class="container">
  <h1 class="post-title">{{ post.front_matter.title or 'default title' }}</h1>
  <div class="content">{{ content }}</div>
</main>
</body>
</html>
"""

POST_FALLBACK_TEMPLATE = _HEAD + r"""<title>Known Blog</title>
""" + _STYLE + r"""</head>
<body>
""" + _BLOG_NAV + r"""<main class="container" id="post">
  <div class="spinner" role="status" aria-label="Loading"></div>
</main>
<script>
(async () => {
  const slug = {{ slug | tojson }};
  const main = document.getElementById('post');
  const res = await fetch('/api/blog/' + encodeURIComponent(slug));
  if (!res.ok) {
    document.title = 'Known Blog | Not found';
    main.innerHTML = '<h1 class="post-title">404</h1><p>This post could not be found.</p>';
    return;
  }
  const data = await res.json();
  const title = data.frontMatter.title || 'default title';
  document.title = 'Known Blog | ' + title;
  const h1 = document.createElement('h1');
  h1.className = 'post-title';
  h1.textContent = title;
  const body = document.createElement('div');
  body.className = 'content';
  body.innerHTML = data.source.compiledSource;
  main.replaceChildren(h1, body);
})();
</script>
</body>
</html>
"""

NOT_FOUND_TEMPLATE = _HEAD + r"""<title>Known | Not found</title>
""" + _STYLE + r"""</head>
<body>
<main class="container">
  <h1 class="post-title">404</h1>
  <p>This page could not be found.</p>
</main>
</body>
</html>
"""


def serve():
    cfg = load_config()
    configure_logging(cfg["log_level"])
    app = create_app()
    atexit.register(app.extensions["known.db"].close)
    print(f"Serving posts from: {cfg['posts_dir']}")
    print(f"Open http://localhost:{cfg['port']}")
    app.run(host=cfg["host"], port=cfg["port"])


if __name__ == "__main__":
    serve()
