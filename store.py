"""Folder, document and user records on top of SQLAlchemy Core.

A single ``Database`` is opened by ``create_app`` and passed to every
function here; nothing in this module holds a connection between calls.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from werkzeug.security import check_password_hash, generate_password_hash

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(24), nullable=False, unique=True, index=True),
    Column("name", String(200), nullable=False, default=""),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", String(256), nullable=False),
)

folders = Table(
    "folders",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(24), nullable=False, unique=True, index=True),
    Column("owner_id", String(24), ForeignKey("users.id"), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("created_at", Float, nullable=False),
)

documents = Table(
    "documents",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(24), nullable=False, unique=True, index=True),
    Column("folder_id", String(24), ForeignKey("folders.id"), nullable=False, index=True),
    Column("name", String(200), nullable=False),
    Column("content", Text, nullable=False, default=""),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
)

_DOCUMENT_FIELDS = ("name", "content")


@dataclass(frozen=True)
class User:
    id: str
    name: str
    email: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Folder:
    id: str
    owner_id: str
    name: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Document:
    id: str
    folder_id: str
    name: str
    content: str
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Database:
    """Process-wide handle around a pooled SQLAlchemy engine.

    Open it once at startup with ``Database.open`` and release it with
    ``close`` at shutdown. Each data-access call borrows a pooled
    connection for the duration of one transaction.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def open(cls, url: str, create_tables: bool = True) -> "Database":
        engine = create_engine(url)
        if create_tables:
            metadata.create_all(engine)
        logger.info("database opened: %s", engine.url.render_as_string(hide_password=True))
        return cls(engine)

    def begin(self):
        return self.engine.begin()

    def close(self) -> None:
        self.engine.dispose()
        logger.info("database closed")


def new_id() -> str:
    return secrets.token_hex(12)


def _user(row) -> User:
    return User(id=row.id, name=row.name, email=row.email)


def _folder(row) -> Folder:
    return Folder(id=row.id, owner_id=row.owner_id, name=row.name, created_at=row.created_at)


def _document(row) -> Document:
    return Document(
        id=row.id,
        folder_id=row.folder_id,
        name=row.name,
        content=row.content,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# --- users ---

def create_user(db: Database, name: str, email: str, password: str) -> User:
    values = {
        "id": new_id(),
        "name": name,
        "email": email.strip().lower(),
        "password_hash": generate_password_hash(password),
    }
    with db.begin() as conn:
        conn.execute(insert(users).values(**values))
    return User(id=values["id"], name=name, email=values["email"])


def get_user(db: Database, user_id: str) -> User | None:
    with db.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).first()
    return _user(row) if row else None


def get_user_by_email(db: Database, email: str) -> User | None:
    with db.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email.strip().lower())).first()
    return _user(row) if row else None


def verify_user(db: Database, email: str, password: str) -> User | None:
    with db.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email.strip().lower())).first()
    if row is None or not check_password_hash(row.password_hash, password):
        return None
    return _user(row)


# --- folders ---

def get_folders_by_owner(db: Database, owner_id: str) -> list[Folder]:
    query = select(folders).where(folders.c.owner_id == owner_id).order_by(folders.c.seq)
    with db.begin() as conn:
        return [_folder(row) for row in conn.execute(query)]


def get_folder(db: Database, owner_id: str, folder_id: str) -> Folder | None:
    query = select(folders).where(folders.c.id == folder_id, folders.c.owner_id == owner_id)
    with db.begin() as conn:
        row = conn.execute(query).first()
    return _folder(row) if row else None


def create_folder(db: Database, owner_id: str, name: str) -> Folder:
    folder = Folder(id=new_id(), owner_id=owner_id, name=name, created_at=time.time())
    with db.begin() as conn:
        conn.execute(insert(folders).values(**folder.to_dict()))
    return folder


# --- documents ---

def get_documents_by_folder(db: Database, folder_id: str) -> list[Document]:
    query = select(documents).where(documents.c.folder_id == folder_id).order_by(documents.c.seq)
    with db.begin() as conn:
        return [_document(row) for row in conn.execute(query)]


def get_document_by_id(db: Database, doc_id: str) -> Document | None:
    with db.begin() as conn:
        row = conn.execute(select(documents).where(documents.c.id == doc_id)).first()
    return _document(row) if row else None


def create_document(db: Database, folder_id: str, name: str, content: str = "") -> Document:
    now = time.time()
    doc = Document(id=new_id(), folder_id=folder_id, name=name, content=content,
                   created_at=now, updated_at=now)
    with db.begin() as conn:
        conn.execute(insert(documents).values(**doc.to_dict()))
    return doc


def update_document(db: Database, doc_id: str, **fields: Any) -> Document | None:
    unknown = set(fields) - set(_DOCUMENT_FIELDS)
    if unknown:
        raise ValueError(f"cannot update document fields: {', '.join(sorted(unknown))}")
    values = {k: v for k, v in fields.items() if v is not None}
    values["updated_at"] = time.time()
    with db.begin() as conn:
        result = conn.execute(update(documents).where(documents.c.id == doc_id).values(**values))
        if result.rowcount == 0:
            return None
        row = conn.execute(select(documents).where(documents.c.id == doc_id)).first()
    return _document(row)
