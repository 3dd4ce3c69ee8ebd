"""
app/models/account.py

Tabelas da camada de aplicação (contas, eventos locais, reposts) que o núcleo
de federação apenas lê. A única escrita feita aqui é a criação preguiçosa do
par de chaves RSA de cada conta.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(64), unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255))
    bio: Mapped[str | None] = mapped_column(Text)
    website_url: Mapped[str | None] = mapped_column(String(2048))
    avatar_url: Mapped[str | None] = mapped_column(String(2048))

    # Par de chaves criado sob demanda (primeira interação federada).
    # A chave privada nunca sai do servidor e nunca é logada.
    public_key_pem: Mapped[str | None] = mapped_column(Text)
    private_key_pem: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), insert_default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Account username={self.username!r}>"


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), index=True)
    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[str | None] = mapped_column(Text)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    location_name: Mapped[str | None] = mapped_column(String(512))
    location_address: Mapped[str | None] = mapped_column(String(1024))
    location_latitude: Mapped[float | None] = mapped_column(Float)
    location_longitude: Mapped[float | None] = mapped_column(Float)
    image_url: Mapped[str | None] = mapped_column(String(2048))
    image_media_type: Mapped[str | None] = mapped_column(String(128))
    image_alt: Mapped[str | None] = mapped_column(Text)
    # JSON serializado com a atribuição da imagem (autor, licença, fonte)
    image_attribution: Mapped[str | None] = mapped_column(Text)
    url: Mapped[str | None] = mapped_column(String(2048))
    # public | unlisted | followers_only | private
    visibility: Mapped[str] = mapped_column(String(32), default="public", index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), insert_default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), insert_default=utcnow, onupdate=utcnow
    )

    account: Mapped[Account] = relationship(lazy="selectin")
    tags: Mapped[list["EventTag"]] = relationship(
        lazy="selectin", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Event id={self.id!r} title={self.title!r}>"


class EventTag(Base):
    __tablename__ = "event_tags"

    event_id: Mapped[str] = mapped_column(
        ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    tag: Mapped[str] = mapped_column(String(128), primary_key=True)


class Repost(Base):
    """Repost explícito de um único evento no feed da conta."""

    __tablename__ = "reposts"

    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), primary_key=True)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), insert_default=utcnow
    )


class AutoRepost(Base):
    """Repost automático de todos os eventos públicos de outra conta local."""

    __tablename__ = "auto_reposts"

    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), primary_key=True)
    source_account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), insert_default=utcnow
    )
