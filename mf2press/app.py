#!/usr/bin/env python3
"""
A Micropub endpoint that keeps every post as an MF2 document in a
git-hosted publication.
"""

import itertools
import json
import os
import re
import sqlite3
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from time import time
from typing import DefaultDict

import click
from flask import Flask, Response, g, has_request_context, render_template_string, request
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from mf2press import codec
from mf2press.errors import (
    InputError,
    MalformedRequestError,
    MicropubError,
    NotFoundError,
    PublishError,
    UnknownPostTypeError,
    UnsupportedActionError,
)
from mf2press.mf2 import (
    Entity,
    UpdateRequest,
    apply_update,
    discover_post_type,
    extract,
    extract_entity,
    fetch_html,
    parse_update_request,
    text_of,
    value_to_json,
)
from mf2press.publisher import FilePublisher, GitHubPublisher

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "mf2press.sqlite3"
ENV_FILE = ROOT / ".env"

GITHUB_ENV_KEYS = ("GITHUB_TOKEN", "GITHUB_USER", "GITHUB_REPO", "GITHUB_BRANCH")
GITHUB_REQUIRED_KEYS = ("GITHUB_TOKEN", "GITHUB_USER", "GITHUB_REPO")
UPLOAD_MAX_BYTES = 32 * 1024 * 1024

# Paths and URLs are Jinja strings; context: me, slug, published, filename
_MEDIA_PATH = "media/{{ published | date('%Y/%m') }}/{{ filename }}"


def _post_type(name: str, icon: str, section: str) -> dict[str, str]:
    return {
        "name": name,
        "icon": icon,
        "post": "_" + section + "/{{ published | date('%Y-%m-%d') }}-{{ slug }}.md",
        "url": "{{ me }}/" + section + "/{{ published | date('%Y/%m/%d') }}/{{ slug }}",
        "media": _MEDIA_PATH,
    }


POST_TYPE_CONFIG = {
    "article": _post_type("Article", "📄", "articles"),
    "note": _post_type("Note", "📝", "notes"),
    "photo": _post_type("Photo", "📷", "photos"),
    "video": _post_type("Video", "📹", "videos"),
    "audio": _post_type("Audio", "🔉", "audio"),
    "bookmark": _post_type("Bookmark", "🔖", "bookmarks"),
    "checkin": _post_type("Check-in", "📍", "checkins"),
    "event": _post_type("Event", "📅", "events"),
    "like": _post_type("Like", "👍", "likes"),
    "reply": _post_type("Reply", "💬", "replies"),
    "repost": _post_type("Repost", "🔄", "reposts"),
    "rsvp": _post_type("RSVP", "📆", "replies"),
}

ACTION_TEMPLATES = {
    "create": "{icon} Created {type} post",
    "update": "{icon} Updated {type} post",
    "delete": "❌ Deleted {type} post",
    "undelete": "{icon} Undeleted {type} post",
    "upload": "🖼 Uploaded {type}",
}

MEDIA_KINDS = {"image": "photo", "video": "video", "audio": "audio"}
FORM_RESERVED = {"h", "access_token", "action"}
QUERIES = ["config", "source", "syndicate-to", "post-types"]


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env(key: str, default: str | None = None) -> str | None:
    """Process environment first, then the ``.env`` file next to the app."""
    return os.environ.get(key) or _read_env_file().get(key) or default


def github_config() -> dict[str, str]:
    cfg = {k: (env(k) or "").strip() for k in GITHUB_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def github_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or github_config()
    return all(cfg.get(k) for k in GITHUB_REQUIRED_KEYS)


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    DATABASE=env("DATABASE", str(DB_FILE)),
    PUBLICATION_URL=env("PUBLICATION_URL", ""),
    PUBLICATION_CONFIG=env("PUBLICATION_CONFIG"),
    PUBLISHER_DIR=env("PUBLISHER_DIR"),
    MEDIA_ENDPOINT=env("MEDIA_ENDPOINT"),
    PUBLISHER=None,  # a ready publisher instance wins over the env settings
    RATE_LIMIT_ENABLED=True,
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("date")
def date_filter(iso: str | None, fmt: str) -> str:
    if not iso:
        return ""
    return datetime.fromisoformat(iso).strftime(fmt)


def render_template(template: str, **ctx) -> str:
    return render_template_string(template, **ctx).strip()


###############################################################################
# Database helpers
###############################################################################
SCHEMA = """
    CREATE TABLE IF NOT EXISTS post (
        url         TEXT PRIMARY KEY,
        type        TEXT NOT NULL,
        path        TEXT NOT NULL,
        mf2         TEXT NOT NULL,
        deleted     INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS media (
        url         TEXT PRIMARY KEY,
        type        TEXT NOT NULL,
        path        TEXT NOT NULL,
        created_at  TEXT NOT NULL
    );
"""


def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
        g.db.executescript(SCHEMA)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    get_db().commit()


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
def cli_init():
    """Create the post store (no-op if it exists)."""
    init_db()
    click.secho("\n✅  Post store ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("extract")
@click.argument("html_file", type=click.File("r", encoding="utf-8"))
@click.option("--property", "-p", "properties", multiple=True, help="Only these properties")
@click.option("--url", help="Base URL for resolving relative links")
def cli_extract(html_file, properties, url):
    """Print the MF2 properties of the single item in HTML_FILE."""
    try:
        props = extract(html_file.read(), list(properties) or None, url=url)
    except MicropubError as exc:
        raise click.ClickException(str(exc)) from exc
    data = {k: [value_to_json(v) for v in vals] for k, vals in props.items()}
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@app.cli.command("post-types")
def cli_post_types():
    """List the post types this publication accepts."""
    for key, cfg in post_type_config().items():
        click.echo(f"{cfg['icon']}  {key:<10} {cfg['post']}")


###############################################################################
# Publication
###############################################################################
def post_type_config() -> dict[str, dict]:
    """
    Built-in post types, with per-type overrides from the JSON file named by
    ``PUBLICATION_CONFIG`` (either the mapping itself or under
    ``"post-types"``).
    """
    merged = {k: dict(v) for k, v in POST_TYPE_CONFIG.items()}
    cfg_file = app.config.get("PUBLICATION_CONFIG")
    if not cfg_file:
        return merged

    try:
        overrides = json.loads(Path(cfg_file).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        app.logger.error("Cannot read publication config %s: %s", cfg_file, exc)
        raise
    overrides = overrides.get("post-types", overrides)
    for key, cfg in overrides.items():
        merged.setdefault(key, {}).update(cfg)
    return merged


def lookup_post_type(post_type: str, config: dict | None = None) -> dict:
    config = post_type_config() if config is None else config
    cfg = config.get(post_type)
    if not cfg or "icon" not in cfg:
        raise UnknownPostTypeError(f"No configuration for post type “{post_type}”")
    return cfg


def format_message(action: str, post_type: str, config: dict | None = None) -> str:
    """Commit message for *action* on a post of *post_type*."""
    icon = lookup_post_type(post_type, config)["icon"]
    template = ACTION_TEMPLATES.get(action)
    if template is None:
        raise UnsupportedActionError(f"Unrecognized action “{action}”")
    return template.format(icon=icon, type=post_type)


def publication_url() -> str:
    url = app.config.get("PUBLICATION_URL")
    if not url and has_request_context():
        url = request.host_url
    return (url or "").rstrip("/")


def media_endpoint() -> str:
    return app.config.get("MEDIA_ENDPOINT") or f"{publication_url()}/media"


def get_publisher():
    pub = app.config.get("PUBLISHER")
    if pub is not None:
        return pub
    if "publisher" not in g:
        cfg = github_config()
        if github_is_configured(cfg):
            g.publisher = GitHubPublisher(
                token=cfg["GITHUB_TOKEN"],
                user=cfg["GITHUB_USER"],
                repo=cfg["GITHUB_REPO"],
                branch=cfg.get("GITHUB_BRANCH", "main"),
            )
        elif app.config.get("PUBLISHER_DIR"):
            g.publisher = FilePublisher(app.config["PUBLISHER_DIR"])
        else:
            raise PublishError("No publisher configured (set GITHUB_* or PUBLISHER_DIR)")
    return g.publisher


###############################################################################
# Post store
###############################################################################
@dataclass
class PostData:
    type: str
    path: str
    url: str
    mf2: Entity
    deleted: bool = False


def save_post(post: PostData, *, db=None) -> None:
    db = db or get_db()
    now = utc_now().isoformat(timespec="seconds")
    db.execute(
        """INSERT INTO post (url, type, path, mf2, deleted, created_at, updated_at)
                VALUES (?,?,?,?,?,?,?)
           ON CONFLICT(url) DO UPDATE SET
                type=excluded.type, path=excluded.path, mf2=excluded.mf2,
                deleted=excluded.deleted, updated_at=excluded.updated_at""",
        (
            post.url,
            post.type,
            post.path,
            json.dumps(post.mf2.to_json(), ensure_ascii=False),
            int(post.deleted),
            now,
            now,
        ),
    )
    db.commit()


def load_post(url: str, *, db=None) -> PostData:
    db = db or get_db()
    row = db.execute(
        "SELECT url, type, path, mf2, deleted FROM post WHERE url=?", (url,)
    ).fetchone()
    if not row:
        raise NotFoundError(f"No post found at {url}")
    return PostData(
        type=row["type"],
        path=row["path"],
        url=row["url"],
        mf2=Entity.from_json(json.loads(row["mf2"])),
        deleted=bool(row["deleted"]),
    )


###############################################################################
# Posts
###############################################################################
def slugify(text: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", text or "").strip().lower()
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug[:80].strip("-")


def prepare_entity(entity: Entity) -> Entity:
    """
    Fill in what a new post needs before it is stored: ``published``, a
    ``slug``, and no ``mp-*`` server commands.
    """
    entity = entity.copy()
    commands = {
        k: entity.properties.pop(k) for k in list(entity.properties) if k.startswith("mp-")
    }
    now = utc_now()

    if not entity.has("published"):
        entity.properties["published"] = [now.isoformat(timespec="seconds")]

    slug = slugify(text_of((commands.get("mp-slug") or [None])[0]))
    slug = slug or slugify(text_of(entity.first("slug")))
    slug = slug or slugify(text_of(entity.first("name")))
    entity.properties["slug"] = [slug or now.strftime("%Y%m%d%H%M%S")]
    return entity.clean()


def _template_context(entity: Entity, **extra) -> dict:
    return {
        "me": publication_url(),
        "slug": text_of(entity.first("slug")),
        "published": text_of(entity.first("published")),
        **extra,
    }


def _location_taken(publisher, path: str, url: str) -> bool:
    """A post (live or deleted) already owns *url*, or a file sits at *path*."""
    try:
        load_post(url)
        return True
    except NotFoundError:
        pass
    try:
        publisher.read_file(path)
    except NotFoundError:
        return False
    return True


def create_post(entity: Entity) -> PostData:
    if not entity.properties:
        raise InputError("Nothing to publish")
    entity = prepare_entity(entity)

    post_type = discover_post_type(entity)
    cfg = lookup_post_type(post_type)
    message = format_message("create", post_type)
    publisher = get_publisher()

    # same slug on the same day: hello, hello-2, hello-3 ...
    base = text_of(entity.first("slug"))
    for n in itertools.count(1):
        entity.properties["slug"] = [base if n == 1 else f"{base}-{n}"]
        ctx = _template_context(entity)
        path = render_template(cfg["post"], **ctx)
        url = render_template(cfg["url"], **ctx)
        if not _location_taken(publisher, path, url):
            break
        app.logger.debug("create: %s is taken", url)

    publisher.write_file(path, codec.encode(entity), message)
    app.logger.info("%s -> %s", message, path)

    post = PostData(type=post_type, path=path, url=url, mf2=entity)
    save_post(post)
    return post


def update_post(post: PostData, req: UpdateRequest) -> PostData:
    """
    Fetch -> decode -> patch -> encode -> commit.  The stored file is the
    source of truth; the blob version read here guards the write.
    """
    publisher = get_publisher()

    app.logger.debug("update %s: fetching %s", post.url, post.path)
    stored, version = publisher.read_file(post.path)
    current = codec.decode(stored, type=post.mf2.type[0])

    updated = apply_update(current, req)
    content = codec.encode(updated)

    message = format_message("update", post.type)
    publisher.write_file(post.path, content, message, version=version)
    app.logger.info("%s -> %s", message, post.path)

    post = replace(post, mf2=updated)
    save_post(post)
    return post


def delete_post(post: PostData) -> PostData:
    if post.deleted:
        raise NotFoundError(f"{post.url} is already deleted")
    message = format_message("delete", post.type)
    get_publisher().delete_file(post.path, message)
    app.logger.info("%s -> %s", message, post.path)

    post = replace(post, deleted=True)
    save_post(post)
    return post


def undelete_post(post: PostData) -> PostData:
    if not post.deleted:
        raise MalformedRequestError(f"{post.url} is not deleted")
    message = format_message("undelete", post.type)
    get_publisher().write_file(post.path, codec.encode(post.mf2), message)
    app.logger.info("%s -> %s", message, post.path)

    post = replace(post, deleted=False)
    save_post(post)
    return post


def media_type_of(mimetype: str | None, content: bytes) -> str:
    """photo / video / audio for an upload, or InputError."""
    media_type = MEDIA_KINDS.get((mimetype or "").split("/")[0])
    if not media_type:
        raise InputError(f"Unsupported media type “{mimetype}”")
    if not content:
        raise InputError("Empty upload")
    return media_type


def upload_media(filename: str | None, content: bytes, mimetype: str | None) -> str:
    """Commit an uploaded file and return its public URL."""
    media_type = media_type_of(mimetype, content)

    cfg = lookup_post_type(media_type)
    now = utc_now()
    name = secure_filename(filename or "") or now.strftime("%Y%m%d%H%M%S")
    ctx = {
        "me": publication_url(),
        "filename": name,
        "published": now.isoformat(timespec="seconds"),
    }
    path = render_template(cfg.get("media", _MEDIA_PATH), **ctx)
    url = f"{publication_url()}/{path}"

    message = format_message("upload", media_type)
    get_publisher().write_file(path, content, message)
    app.logger.info("%s -> %s", message, path)

    db = get_db()
    db.execute(
        "INSERT OR REPLACE INTO media (url, type, path, created_at) VALUES (?,?,?,?)",
        (url, media_type, path, ctx["published"]),
    )
    db.commit()
    return url


ACTIONS = {
    "update": update_post,
    "delete": lambda post, _req: delete_post(post),
    "undelete": lambda post, _req: undelete_post(post),
}


def run_action(req: UpdateRequest) -> PostData:
    handler = ACTIONS.get(req.action)
    if handler is None:
        raise UnsupportedActionError(f"Unrecognized action “{req.action}”")
    return handler(load_post(req.url), req)


###############################################################################
# Rate limiting
###############################################################################
def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not app.config.get("RATE_LIMIT_ENABLED", True):
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


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Micropub endpoint
###############################################################################
def _form_entity() -> Entity:
    """
    ``h=entry&content=…&category[]=a&category[]=b`` (+ optional files).
    The whole form is checked before any file is committed.
    """
    form = request.form
    h = form.get("h", "entry")
    props: dict[str, list] = {}
    for key in form:
        if key in FORM_RESERVED:
            continue
        name = key[:-2] if key.endswith("[]") else key
        props.setdefault(name, []).extend(form.getlist(key))

    uploads = []
    for key in request.files:
        name = key[:-2] if key.endswith("[]") else key
        for f in request.files.getlist(key):
            content = f.read()
            media_type_of(f.mimetype, content)
            uploads.append((name, f.filename, content, f.mimetype))

    draft = Entity.from_json({"type": [f"h-{h}"], "properties": props})
    for name, filename, _content, _mimetype in uploads:
        draft.properties.setdefault(name, []).append(filename or name)
    if not draft.properties:
        raise InputError("Nothing to publish")
    lookup_post_type(discover_post_type(draft))

    for name, filename, content, mimetype in uploads:
        props.setdefault(name, []).append(upload_media(filename, content, mimetype))

    return Entity.from_json({"type": [f"h-{h}"], "properties": props})


def _success(action: str, post: PostData, status: int = 200):
    body = {"success": action, "success_description": f"Post {action}d at {post.url}"}
    return body, status, {"Location": post.url}


@app.route("/micropub", methods=["POST"])
@rate_limit(max_requests=60, window=60)
def micropub_post():
    if request.is_json:
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise MalformedRequestError("Request body should be a JSON object")
        if "action" in body:
            req = parse_update_request(body)
            post = run_action(req)
            return _success(req.action, post)
        entity = Entity.from_json(body)
    elif request.mimetype == "text/html":
        entity = extract_entity(request.get_data(as_text=True), url=request.args.get("url"))
    else:
        action = request.form.get("action")
        if action:
            if action == "update":
                raise MalformedRequestError("update requires a JSON body")
            req = parse_update_request({"action": action, "url": request.form.get("url")})
            post = run_action(req)
            return _success(action, post)
        entity = _form_entity()

    post = create_post(entity)
    return _success("create", post, 202)


def _source(url: str, names: list[str]) -> dict:
    try:
        post = load_post(url)
    except NotFoundError:
        post = None

    if post is not None and not post.deleted:
        data = post.mf2.to_json()
        if names:
            props = data["properties"]
            return {"properties": {n: props[n] for n in names if n in props}}
        return data

    app.logger.debug("q=source: %s not in the post store, fetching", url)
    html = fetch_html(url)
    if names:
        props = extract(html, names, url=url)
        return {"properties": {k: [value_to_json(v) for v in vals] for k, vals in props.items()}}
    return extract_entity(html, url=url).to_json()


def _post_types() -> list[dict]:
    return [{"type": k, "name": v.get("name", k)} for k, v in post_type_config().items()]


@app.route("/micropub", methods=["GET"])
def micropub_query():
    q = request.args.get("q")
    if q == "config":
        return {
            "media-endpoint": media_endpoint(),
            "syndicate-to": [],
            "post-types": _post_types(),
            "q": QUERIES,
        }
    if q == "syndicate-to":
        return {"syndicate-to": []}
    if q == "post-types":
        return {"post-types": _post_types()}
    if q == "source":
        url = request.args.get("url")
        if not url:
            raise InputError("q=source requires a url")
        names = request.args.getlist("properties[]") or request.args.getlist("properties")
        return _source(url, names)
    raise MalformedRequestError(f"Unsupported query “{q}”" if q else "Missing q parameter")


@app.route("/media", methods=["POST"])
@rate_limit(max_requests=30, window=60)
def media_post():
    f = request.files.get("file")
    if f is None or not f.filename:
        raise InputError("No file received")
    url = upload_media(f.filename, f.read(), f.mimetype)
    return {"url": url}, 201, {"Location": url}


@app.route("/media", methods=["GET"])
def media_query():
    if request.args.get("q") != "last":
        raise MalformedRequestError("Only q=last is supported")
    row = get_db().execute(
        "SELECT url FROM media ORDER BY created_at DESC, rowid DESC LIMIT 1"
    ).fetchone()
    return {"url": row["url"] if row else None}


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(MicropubError)
def micropub_error(exc: MicropubError):
    if exc.status >= 500:
        app.logger.error("%s: %s", type(exc).__name__, exc)
    return {"error": exc.error, "error_description": str(exc)}, exc.status


@app.errorhandler(404)
def not_found(exc):
    return {"error": "not_found", "error_description": "The URL you asked for doesn’t exist."}, 404


@app.errorhandler(500)
def internal_error(exc):
    """
    JSON 500 for production.  With debug on, Flask bypasses this handler and
    the Werkzeug debugger shows the traceback instead.
    """
    app.logger.error("Unhandled error: %s", exc)
    return {"error": "server_error", "error_description": "Internal Server Error"}, 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
