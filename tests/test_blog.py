"""Unit tests for blog — content sources, MDX rendering, post lookup and listing."""

import json
import logging

import pytest
from markupsafe import Markup

from blog import (
    BlogSource,
    CmsContent,
    FilePostStore,
    MdxSource,
    get_post,
    get_posts,
    get_static_paths,
    hydrate,
    parse_front_matter,
    render_markdown,
    render_to_string,
    substitute_scope,
)
from errors import PostNotFound


def _post(slug, title, body="Body."):
    return f"---\nslug: {slug}\ntitle: {title}\nsummary: About {title}\n---\n\n{body}\n"


class TestFrontMatter:

    def test_parse(self):
        meta, body = parse_front_matter(_post("a", "A", "Text"))
        assert meta == {"slug": "a", "title": "A", "summary": "About A"}
        assert body.strip() == "Text"

    def test_dates_become_strings(self):
        meta, _ = parse_front_matter("---\nslug: a\npublishedOn: 2021-01-10\n---\nx")
        assert meta["publishedOn"] == "2021-01-10"
        json.dumps(meta)

    def test_no_front_matter(self):
        assert parse_front_matter("just text") == ({}, "just text")

    def test_broken_yaml(self):
        raw = "---\nslug: [unclosed\n---\nbody"
        meta, body = parse_front_matter(raw)
        assert meta == {}
        assert body == raw


class TestRendering:

    def test_scope_substitution(self):
        assert substitute_scope("Hi {name}!", {"name": "Ada"}) == "Hi Ada!"

    def test_dotted_and_unknown(self):
        scope = {"author": {"name": "Ada"}}
        assert substitute_scope("{author.name} {missing}", scope) == "Ada {missing}"

    def test_values_are_escaped(self):
        assert substitute_scope("{x}", {"x": "<b>"}) == "&lt;b&gt;"

    def test_fenced_code_is_left_alone(self):
        text = "{title}\n\n```text\n{title} stays literal\n```\n"
        out = substitute_scope(text, {"title": "Hello"})
        assert out.startswith("Hello\n")
        assert "{title} stays literal" in out

    def test_render_to_string_uses_front_matter(self):
        source = render_to_string(_post("a", "Alpha", "# {title}\n\nSee https://example.com"))
        assert isinstance(source, MdxSource)
        assert "Alpha</h1>" in source.compiled_source
        assert 'href="https://example.com" target="_blank" rel="noopener noreferrer"' in source.compiled_source
        assert source.scope["slug"] == "a"

    def test_explicit_scope_wins(self):
        source = render_to_string(_post("a", "Alpha", "{title}"), scope={"title": "Beta"})
        assert "Beta" in source.compiled_source

    def test_hydrate(self):
        source = MdxSource(compiled_source="<p>x</p>")
        content = hydrate(source)
        assert isinstance(content, Markup)
        assert str(content) == "<p>x</p>"
        assert MdxSource.from_dict(source.to_dict()) == source

    def test_escape_html_escapes_raw_tags(self):
        html = render_markdown("Hi <script>alert(1)</script>\n\n<div onclick=\"x()\">y</div>", escape_html=True)
        assert "<script>" not in html
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
        assert "<div" not in html

    def test_escape_html_drops_script_links(self):
        html = render_markdown("[click](javascript:alert(1)) and [ok](https://example.com)", escape_html=True)
        assert "javascript:" not in html
        assert "href=\"https://example.com\" target=\"_blank\"" in html

    def test_raw_html_is_kept_for_posts(self):
        assert "<div>x</div>" in render_markdown("<div>x</div>")


class TestSources:

    def test_file_store_reads_slug(self, posts_dir):
        store = FilePostStore(posts_dir)
        assert store.read("hello").found
        missing = store.read("missing")
        assert not missing.found
        assert "missing.mdx" in missing.reason

    def test_file_store_rejects_traversal(self, posts_dir):
        (posts_dir.parent / "secret.mdx").write_text(_post("secret", "Secret"))
        result = FilePostStore(posts_dir).read("../secret")
        assert not result.found
        assert "invalid slug" in result.reason

    def test_file_store_only_lists_mdx(self, posts_dir):
        (posts_dir / "notes.txt").write_text("ignored")
        (posts_dir / "b.mdx").write_text(_post("b", "B"))
        assert [p.name for p in FilePostStore(posts_dir).files()] == ["b.mdx", "hello.mdx"]

    def test_file_store_undecodable_file(self, posts_dir, caplog):
        (posts_dir / "bad.mdx").write_bytes(b"\xff\xfe---\nslug: bad\n---\n")
        store = FilePostStore(posts_dir)
        result = store.read("bad")
        assert not result.found
        assert "bad.mdx is not valid UTF-8" in result.reason
        with caplog.at_level(logging.WARNING):
            assert [p.name for p, _ in store.posts()] == ["hello.mdx"]
        assert "bad.mdx could not be read" in caplog.text
        assert len(store.all()) == 1

    def test_missing_posts_dir(self, tmp_path):
        assert FilePostStore(tmp_path / "nope").all() == []

    def test_cms_load(self, cms_path):
        cms = CmsContent.load(cms_path)
        assert len(cms.draft) == 1
        assert len(cms.published) == 1

    def test_cms_missing_file(self, tmp_path):
        assert CmsContent.load(tmp_path / "nope.json") == CmsContent()

    def test_cms_bad_shape(self, tmp_path):
        path = tmp_path / "cms.json"
        path.write_text(json.dumps({"published": "not a list"}))
        with pytest.raises(ValueError, match="published"):
            CmsContent.load(path)

    def test_cms_find_uses_preview_set(self, cms_path):
        cms = CmsContent.load(cms_path)
        assert cms.find("other").found
        assert not cms.find("other", preview=True).found
        assert cms.find("upcoming", preview=True).source == "cms:draft"


class TestGetPost:

    def test_filesystem_first(self, blog_source):
        post = get_post(blog_source, "hello")
        assert post.origin == "filesystem"
        assert post.front_matter["title"] == "Hello"
        assert "Hello</h1>" in post.source.compiled_source

    def test_cms_published_fallback(self, blog_source):
        post = get_post(blog_source, "other")
        assert post.origin == "cms:published"
        assert post.front_matter["title"] == "Other"
        assert "Served from the CMS." in post.source.compiled_source

    def test_published_only_post_is_hidden_in_preview(self, blog_source):
        with pytest.raises(PostNotFound):
            get_post(blog_source, "other", preview=True)

    def test_draft_in_preview(self, blog_source):
        assert get_post(blog_source, "upcoming", preview=True).origin == "cms:draft"
        with pytest.raises(PostNotFound):
            get_post(blog_source, "upcoming")

    def test_filesystem_wins_over_cms(self, posts_dir, tmp_path):
        cms_path = tmp_path / "dupe.json"
        cms_path.write_text(json.dumps({"draft": [], "published": [_post("hello", "CMS Hello")]}))
        post = get_post(BlogSource.load(posts_dir, cms_path), "hello")
        assert post.front_matter["title"] == "Hello"

    def test_undecodable_file_falls_back_to_cms(self, posts_dir, tmp_path):
        (posts_dir / "bad.mdx").write_bytes(b"\xff\xfe")
        cms_path = tmp_path / "bad.json"
        cms_path.write_text(json.dumps({"draft": [], "published": [_post("bad", "From CMS")]}))
        post = get_post(BlogSource.load(posts_dir, cms_path), "bad")
        assert post.origin == "cms:published"
        assert post.front_matter["title"] == "From CMS"

    def test_undecodable_file_without_cms_entry(self, posts_dir, cms_path):
        (posts_dir / "bad.mdx").write_bytes(b"\xff\xfe")
        with pytest.raises(PostNotFound) as exc:
            get_post(BlogSource.load(posts_dir, cms_path), "bad")
        assert "not valid UTF-8" in exc.value.reasons[0]

    def test_missing_keeps_reasons(self, blog_source):
        with pytest.raises(PostNotFound) as exc:
            get_post(blog_source, "missing")
        assert exc.value.slug == "missing"
        assert len(exc.value.reasons) == 2
        assert exc.value.reasons[0].startswith("filesystem:")
        assert exc.value.reasons[1].startswith("cms:published:")


class TestGetPosts:

    def test_cms_then_filesystem(self, blog_source):
        posts = get_posts(blog_source)
        assert [p["slug"] for p in posts] == ["other", "hello"]

    def test_length_is_sum(self, posts_dir, tmp_path):
        (posts_dir / "b.mdx").write_text(_post("b", "B"))
        cms_path = tmp_path / "many.json"
        cms_path.write_text(json.dumps({"draft": [], "published": [_post("x", "X"), _post("y", "Y")]}))
        source = BlogSource.load(posts_dir, cms_path)
        posts = get_posts(source)
        assert [p["slug"] for p in posts] == ["x", "y", "b", "hello"]
        assert get_posts(source) == posts

    def test_slug_collision_keeps_filesystem(self, posts_dir, tmp_path):
        cms_path = tmp_path / "dupe.json"
        cms_path.write_text(json.dumps({"draft": [], "published": [_post("hello", "CMS Hello"), _post("x", "X")]}))
        posts = get_posts(BlogSource.load(posts_dir, cms_path))
        assert [(p["slug"], p["title"]) for p in posts] == [("x", "X"), ("hello", "Hello")]

    def test_drafts_are_not_listed(self, blog_source):
        assert "upcoming" not in [p["slug"] for p in get_posts(blog_source)]

    def test_undecodable_file_is_not_listed(self, posts_dir, cms_path):
        (posts_dir / "bad.mdx").write_bytes(b"\xff\xfe---\nslug: bad\n---\n")
        posts = get_posts(BlogSource.load(posts_dir, cms_path))
        assert [p["slug"] for p in posts] == ["other", "hello"]


class TestStaticPaths:

    def test_only_filesystem_slugs(self, blog_source):
        assert get_static_paths(blog_source) == {
            "paths": [{"params": {"slug": "hello"}}],
            "fallback": True,
        }

    def test_files_without_slug_are_skipped(self, posts_dir, cms_path):
        (posts_dir / "untitled.mdx").write_text("---\ntitle: Untitled\n---\nx")
        paths = get_static_paths(BlogSource.load(posts_dir, cms_path), fallback="blocking")
        assert paths["paths"] == [{"params": {"slug": "hello"}}]
        assert paths["fallback"] == "blocking"

    def test_undecodable_files_are_skipped(self, posts_dir, cms_path):
        (posts_dir / "bad.mdx").write_bytes(b"\xff\xfe---\nslug: bad\n---\n")
        paths = get_static_paths(BlogSource.load(posts_dir, cms_path))
        assert paths["paths"] == [{"params": {"slug": "hello"}}]
