"""Shared fixtures: an app on a throwaway SQLite file, a posts dir and a CMS export.

Run:  pytest tests/ -v
"""

from __future__ import annotations

import json

import pytest

from auth import SESSION_USER_KEY, Session
from blog import BlogSource
from server import create_app
from store import create_user

HELLO_POST = """\
---
slug: hello
title: "Hello"
summary: "First post"
---

# {title}

Body of the hello post.
"""

OTHER_CMS_POST = "---\nslug: other\ntitle: Other\nsummary: From the CMS\n---\n\nServed from the CMS.\n"
DRAFT_CMS_POST = "---\nslug: upcoming\ntitle: Upcoming\nsummary: Draft only\n---\n\nNot published yet.\n"


@pytest.fixture
def posts_dir(tmp_path):
    root = tmp_path / "posts"
    root.mkdir()
    (root / "hello.mdx").write_text(HELLO_POST, encoding="utf-8")
    return root


@pytest.fixture
def cms_path(tmp_path):
    path = tmp_path / "cms.json"
    path.write_text(json.dumps({"draft": [DRAFT_CMS_POST], "published": [OTHER_CMS_POST]}), encoding="utf-8")
    return path


@pytest.fixture
def blog_source(posts_dir, cms_path):
    return BlogSource.load(posts_dir, cms_path)


@pytest.fixture
def make_app(tmp_path, posts_dir, cms_path):
    """Build apps with per-test config overrides; every database is closed afterwards."""
    apps = []

    def _make(**overrides):
        config = {
            "database_url": f"sqlite:///{tmp_path / f'known-{len(apps)}.db'}",
            "posts_dir": posts_dir,
            "cms_path": cms_path,
            "secret_key": "test-secret",
            "blog_fallback": "true",
            "preview_routes": ["/blog"],
            "preview_secret": None,
            "preview_max_age": 3600,
        }
        config.update(overrides)
        app = create_app(config)
        app.config["TESTING"] = True
        apps.append(app)
        return app

    yield _make
    for app in apps:
        app.extensions["known.db"].close()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def db(app):
    return app.extensions["known.db"]


@pytest.fixture
def user(db):
    return create_user(db, "Ada", "ada@example.com", "correct horse")


@pytest.fixture
def other_user(db):
    return create_user(db, "Bob", "bob@example.com", "battery staple")


@pytest.fixture
def session(user):
    return Session(user=user)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client, user):
    with client.session_transaction() as s:
        s[SESSION_USER_KEY] = user.id
    return client
