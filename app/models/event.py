"""
app/models/event.py

Cache de objetos `Event` recebidos de outros servidores.

Um Delete federado apenas marca `canceled=True`: lembretes e notificações
ainda precisam do último formato conhecido do evento.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class RemoteEvent(Base):
    __tablename__ = "remote_events"

    uri: Mapped[str] = mapped_column(String(2048), primary_key=True)

    # Dono do evento. Só ele pode atualizar ou cancelar.
    actor_uri: Mapped[str] = mapped_column(String(2048), index=True)

    title: Mapped[str] = mapped_column(String(512), default="")
    description: Mapped[str | None] = mapped_column(Text)

    # Mantidos como o servidor remoto enviou (ISO 8601): o diff de Update
    # compara exatamente esses valores.
    start_date: Mapped[str] = mapped_column(String(64), index=True)
    end_date: Mapped[str | None] = mapped_column(String(64))

    location_name: Mapped[str | None] = mapped_column(String(512))
    location_address: Mapped[str | None] = mapped_column(String(1024))
    location_latitude: Mapped[float | None] = mapped_column(Float)
    location_longitude: Mapped[float | None] = mapped_column(Float)

    image_url: Mapped[str | None] = mapped_column(String(2048))
    image_media_type: Mapped[str | None] = mapped_column(String(128))
    image_alt: Mapped[str | None] = mapped_column(Text)
    image_attribution: Mapped[dict | None] = mapped_column(JSON)

    url: Mapped[str | None] = mapped_column(String(2048))
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    raw_json: Mapped[str | None] = mapped_column(Text)
    published: Mapped[str | None] = mapped_column(String(64))
    updated: Mapped[str | None] = mapped_column(String(64))
    canceled: Mapped[bool] = mapped_column(Boolean, default=False)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def snapshot(self) -> dict:
        """Formato entregue às camadas de notificação."""
        return {
            "id": self.uri,
            "title": self.title,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "allDay": False,
            "location": {"name": self.location_name} if self.location_name else None,
            "url": self.url,
        }

    def __repr__(self) -> str:
        return f"<RemoteEvent uri={self.uri!r} canceled={self.canceled!r}>"
