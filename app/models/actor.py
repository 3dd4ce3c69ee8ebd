"""
app/models/actor.py

Cache de actors remotos e controle de descoberta por domínio.

`RemoteActor.uri` é a chave natural (IRI canônico do actor). As linhas nunca
são apagadas: são dados "soft", só atualizados quando o resolver busca o
documento de novo. `last_fetched_at` indica a idade do snapshot.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class RemoteActor(Base):
    __tablename__ = "remote_actors"

    uri: Mapped[str] = mapped_column(String(2048), primary_key=True)
    type: Mapped[str] = mapped_column(String(64), default="Person")
    preferred_username: Mapped[str] = mapped_column(String(255), default="")
    display_name: Mapped[str] = mapped_column(String(512), default="")
    summary: Mapped[str | None] = mapped_column(Text)
    inbox: Mapped[str] = mapped_column(String(2048))
    outbox: Mapped[str | None] = mapped_column(String(2048))
    shared_inbox: Mapped[str | None] = mapped_column(String(2048))
    followers_url: Mapped[str | None] = mapped_column(String(2048))
    following_url: Mapped[str | None] = mapped_column(String(2048))

    # None = desconhecido (coleção ausente, privada ou com totalItems negativo)
    followers_count: Mapped[int | None] = mapped_column(Integer)
    following_count: Mapped[int | None] = mapped_column(Integer)

    icon_url: Mapped[str | None] = mapped_column(String(2048))
    image_url: Mapped[str | None] = mapped_column(String(2048))
    public_key_id: Mapped[str | None] = mapped_column(String(2048))
    public_key_pem: Mapped[str | None] = mapped_column(Text)
    domain: Mapped[str] = mapped_column(String(255), index=True)
    last_fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<RemoteActor uri={self.uri!r}>"


class DomainDiscovery(Base):
    """Memo por domínio: evita varrer o diretório de um servidor com frequência."""

    __tablename__ = "domain_discovery"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    software_type: Mapped[str | None] = mapped_column(String(64))

    def __repr__(self) -> str:
        return f"<DomainDiscovery domain={self.domain!r} software={self.software_type!r}>"
