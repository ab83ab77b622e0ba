"""Blog posts from the posts directory and the CMS export.

Single posts are looked up through an ordered chain of sources: the
``<slug>.mdx`` file first, then the CMS set picked by preview mode
(``draft`` while previewing, ``published`` otherwise). Listings show CMS
``published`` posts followed by filesystem posts; when both carry the
same slug the filesystem post wins, matching the single-post lookup.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable

import frontmatter
import markdown
import yaml
from markdown.extensions import Extension
from markupsafe import Markup, escape

from errors import PostNotFound

logger = logging.getLogger(__name__)

POST_SUFFIX = ".mdx"
MARKDOWN_EXTENSIONS = ["fenced_code", "codehilite", "tables", "toc", "sane_lists"]

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_EXPR_RE = re.compile(r"\{\s*([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\s*\}")
_FENCE_RE = re.compile(r"(^```.*?^```[ \t]*$|^~~~.*?^~~~[ \t]*$)", re.S | re.M)


def parse_front_matter(raw: str) -> tuple[dict[str, Any], str]:
    try:
        post = frontmatter.loads(raw)
    except (yaml.YAMLError, ValueError) as e:
        logger.warning("could not parse front-matter: %s", e)
        return {}, raw
    meta = post.metadata if isinstance(post.metadata, dict) else {}
    return {k: _plain(v) for k, v in meta.items()}, post.content


def _plain(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


# --- MDX rendering ---

@dataclass(frozen=True)
class MdxSource:
    compiled_source: str
    scope: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"compiledSource": self.compiled_source, "scope": self.scope}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MdxSource":
        return cls(compiled_source=data.get("compiledSource", ""), scope=data.get("scope") or {})


def _lookup(scope: dict[str, Any], dotted: str):
    value: Any = scope
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            raise KeyError(dotted)
        value = value[part]
    return value


def substitute_scope(text: str, scope: dict[str, Any]) -> str:

    def replace(m):
        try:
            value = _lookup(scope, m.group(1))
        except KeyError:
            return m.group(0)
        return str(escape(value))

    chunks = _FENCE_RE.split(text)
    return "".join(
        chunk if i % 2 else _EXPR_RE.sub(replace, chunk)
        for i, chunk in enumerate(chunks)
    )


def auto_link_urls(text: str) -> str:
    return re.sub(
        r'(?<!\]\()(?<!\()(?<!<)(https?://[^\s<>\)\]]+)',
        lambda m: f'[{m.group(1)}]({m.group(1)})',
        text,
    )


class EscapeHtml(Extension):
    """Treat raw HTML in the source as text."""

    def extendMarkdown(self, md):
        md.preprocessors.deregister("html_block")
        md.inlinePatterns.deregister("html")


_SCRIPT_HREF_RE = re.compile(r'href="\s*(?:javascript|vbscript|data):[^"]*"', re.I)


def render_markdown(text: str, escape_html: bool = False) -> str:
    """Render Markdown to HTML.

    With ``escape_html`` raw tags are escaped and script links are dropped;
    use it for anything a user typed.
    """
    extensions = list(MARKDOWN_EXTENSIONS)
    if escape_html:
        extensions.append(EscapeHtml())
    html = markdown.markdown(auto_link_urls(text), extensions=extensions)
    if escape_html:
        html = _SCRIPT_HREF_RE.sub('href="#"', html)
    return re.sub(
        r'<a href="(https?://[^"]+)"',
        r'<a href="\1" target="_blank" rel="noopener noreferrer"',
        html,
    )


def render_to_string(raw: str, scope: dict[str, Any] | None = None) -> MdxSource:
    """Render an MDX document into a payload the page template can hydrate.

    ``{name}`` expressions outside fenced code are filled from ``scope``;
    unknown names are left untouched.
    """
    meta, body = parse_front_matter(raw)
    scope = dict(meta if scope is None else scope)
    return MdxSource(compiled_source=render_markdown(substitute_scope(body, scope)), scope=scope)


def hydrate(source: MdxSource) -> Markup:
    return Markup(source.compiled_source)


# --- content sources ---

@dataclass(frozen=True)
class Lookup:
    source: str
    raw: str | None = None
    reason: str | None = None

    @property
    def found(self) -> bool:
        return self.raw is not None


class FilePostStore:
    """The ``posts/`` directory: one ``<slug>.mdx`` file per post."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, slug: str) -> Path | None:
        if not slug or not _SLUG_RE.match(slug) or ".." in slug:
            return None
        return self.root / f"{slug}{POST_SUFFIX}"

    def read(self, slug: str) -> Lookup:
        path = self.path_for(slug)
        if path is None:
            return Lookup("filesystem", reason=f"invalid slug {slug!r}")
        try:
            return Lookup("filesystem", raw=path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return Lookup("filesystem", reason=f"{path.name} does not exist")
        except UnicodeDecodeError as e:
            return Lookup("filesystem", reason=f"{path.name} is not valid UTF-8: {e.reason}")
        except OSError as e:
            return Lookup("filesystem", reason=f"{path.name} unreadable: {e}")

    def files(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_file() and p.suffix == POST_SUFFIX)

    def posts(self) -> list[tuple[Path, str]]:
        """Every readable post file with its text; undecodable files are skipped."""
        out = []
        for path in self.files():
            try:
                out.append((path, path.read_text(encoding="utf-8")))
            except (UnicodeDecodeError, OSError) as e:
                logger.warning("%s could not be read; skipping: %s", path.name, e)
        return out

    def all(self) -> list[str]:
        return [raw for _, raw in self.posts()]


@dataclass(frozen=True)
class CmsContent:
    """Raw MDX strings exported from the CMS, split into drafts and published."""

    draft: tuple[str, ...] = ()
    published: tuple[str, ...] = ()

    @classmethod
    def load(cls, path: Path) -> "CmsContent":
        path = Path(path)
        if not path.is_file():
            logger.debug("no CMS export at %s", path)
            return cls()
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path.name} must contain an object with draft and published lists")
        sets = {}
        for key in ("draft", "published"):
            items = data.get(key) or []
            if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
                raise ValueError(f"{path.name}: {key} must be a list of strings")
            sets[key] = tuple(items)
        return cls(**sets)

    def posts(self, preview: bool = False) -> tuple[str, ...]:
        return self.draft if preview else self.published

    def find(self, slug: str, preview: bool = False) -> Lookup:
        name = "cms:draft" if preview else "cms:published"
        for raw in self.posts(preview):
            meta, _ = parse_front_matter(raw)
            if meta.get("slug") == slug:
                return Lookup(name, raw=raw)
        return Lookup(name, reason=f"no {name.split(':')[1]} entry with slug {slug!r}")


@dataclass(frozen=True)
class BlogSource:
    files: FilePostStore
    cms: CmsContent

    @classmethod
    def load(cls, posts_dir: Path, cms_path: Path) -> "BlogSource":
        return cls(files=FilePostStore(posts_dir), cms=CmsContent.load(cms_path))


# --- page data ---

@dataclass(frozen=True)
class PostProps:
    source: MdxSource
    front_matter: dict[str, Any]
    origin: str

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source.to_dict(), "frontMatter": self.front_matter, "origin": self.origin}


def get_post(source: BlogSource, slug: str, preview: bool = False) -> PostProps:
    steps: list[Callable[[], Lookup]] = [
        lambda: source.files.read(slug),
        lambda: source.cms.find(slug, preview),
    ]
    reasons = []
    for step in steps:
        result = step()
        if result.found:
            meta, _ = parse_front_matter(result.raw)
            return PostProps(
                source=render_to_string(result.raw, scope=meta),
                front_matter=meta,
                origin=result.source,
            )
        logger.debug("post %s not in %s: %s", slug, result.source, result.reason)
        reasons.append(f"{result.source}: {result.reason}")
    raise PostNotFound(slug, reasons)


def get_posts(source: BlogSource) -> list[dict[str, Any]]:
    cms_posts = [parse_front_matter(raw)[0] for raw in source.cms.published]
    file_posts = [parse_front_matter(raw)[0] for raw in source.files.all()]

    file_slugs = {p.get("slug") for p in file_posts if p.get("slug")}
    shadowed = [p.get("slug") for p in cms_posts if p.get("slug") in file_slugs]
    if shadowed:
        logger.debug("filesystem posts override CMS posts: %s", ", ".join(shadowed))
    return [p for p in cms_posts if p.get("slug") not in file_slugs] + file_posts


def get_static_paths(source: BlogSource, fallback: bool | str = True) -> dict[str, Any]:
    paths = []
    for path, raw in source.files.posts():
        meta, _ = parse_front_matter(raw)
        slug = meta.get("slug")
        if not slug:
            logger.warning("%s has no slug in its front-matter; skipping", path.name)
            continue
        paths.append({"params": {"slug": str(slug)}})
    return {"paths": paths, "fallback": fallback}
