"""Props for the /app folder and document browser.

Routes:

    /app                 folders only
    /app/<folder>        folders, active folder and its documents
    /app/<folder>/<doc>  the above plus the active document
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence, Union

from auth import Session
from errors import DocumentNotFound, FolderNotFound, NotFoundError
from store import (
    Database,
    Document,
    Folder,
    get_document_by_id,
    get_documents_by_folder,
    get_folder,
    get_folders_by_owner,
)


@dataclass(frozen=True)
class Unauthenticated:
    kind = "unauthenticated"


@dataclass(frozen=True)
class FolderList:
    session: Session
    folders: list[Folder] = field(default_factory=list)
    kind = "folders"


@dataclass(frozen=True)
class FolderView:
    session: Session
    folders: list[Folder]
    folder: Folder
    documents: list[Document]
    kind = "folder"


@dataclass(frozen=True)
class DocumentView:
    session: Session
    folders: list[Folder]
    folder: Folder
    documents: list[Document]
    document: Document
    kind = "document"


AppProps = Union[Unauthenticated, FolderList, FolderView, DocumentView]


def resolve_app_props(db: Database, session: Session | None, segments: Sequence[str] = ()) -> AppProps:
    if session is None or session.user is None:
        return Unauthenticated()

    segments = [s for s in segments if s]
    if len(segments) > 2:
        raise NotFoundError("too many path segments", path="/".join(segments))

    owner_id = session.user.id
    folders = get_folders_by_owner(db, owner_id)
    if not segments:
        return FolderList(session=session, folders=folders)

    folder_id = segments[0]
    folder = next((f for f in folders if f.id == folder_id), None)
    if folder is None:
        raise FolderNotFound(folder_id, owner_id=owner_id)
    docs = get_documents_by_folder(db, folder.id)
    if len(segments) == 1:
        return FolderView(session=session, folders=folders, folder=folder, documents=docs)

    doc_id = segments[1]
    doc = get_document_by_id(db, doc_id)
    # looked up by id alone; the doc may sit in another of the user's folders
    if doc is None or get_folder(db, owner_id, doc.folder_id) is None:
        raise DocumentNotFound(doc_id, owner_id=owner_id)
    return DocumentView(session=session, folders=folders, folder=folder, documents=docs, document=doc)


def select_view(props: AppProps) -> str | None:
    if isinstance(props, Unauthenticated):
        return "signin"
    if isinstance(props, DocumentView):
        return "document"
    if isinstance(props, FolderView):
        return "folder"
    if isinstance(props, FolderList):
        return None
    raise TypeError(f"unknown props type: {type(props).__name__}")


def props_to_dict(props: AppProps) -> dict[str, Any]:
    if isinstance(props, Unauthenticated):
        return {}
    out: dict[str, Any] = {
        "kind": props.kind,
        "session": props.session.to_dict(),
        "folders": [f.to_dict() for f in props.folders],
    }
    if isinstance(props, (FolderView, DocumentView)):
        out["activeFolder"] = props.folder.to_dict()
        out["activeDocs"] = [d.to_dict() for d in props.documents]
    if isinstance(props, DocumentView):
        out["activeDoc"] = props.document.to_dict()
    return out
