"""Exceptions raised while resolving folders, documents and posts.

    KnownError
    ├── NotFoundError
    │   ├── FolderNotFound
    │   ├── DocumentNotFound
    │   └── PostNotFound
    └── PreviewRedirectError
"""

from __future__ import annotations

from typing import Any


class KnownError(Exception):

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class NotFoundError(KnownError):
    """A requested folder, document or post does not exist for this caller."""


class FolderNotFound(NotFoundError):

    def __init__(self, folder_id: str, **context: Any):
        self.folder_id = folder_id
        super().__init__(f"folder {folder_id!r} not found", folder_id=folder_id, **context)


class DocumentNotFound(NotFoundError):

    def __init__(self, doc_id: str, **context: Any):
        self.doc_id = doc_id
        super().__init__(f"document {doc_id!r} not found", doc_id=doc_id, **context)


class PostNotFound(NotFoundError):
    """No content source produced the post. ``reasons`` lists why each one failed."""

    def __init__(self, slug: str, reasons: list[str] | None = None):
        self.slug = slug
        self.reasons = list(reasons or [])
        super().__init__(f"post {slug!r} not found", slug=slug, reasons="; ".join(self.reasons))


class PreviewRedirectError(KnownError):

    def __init__(self, route: str | None, reason: str):
        self.route = route
        self.reason = reason
        super().__init__(f"refusing preview redirect: {reason}", route=route)
