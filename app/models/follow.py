"""
app/models/follow.py

Arestas de follow entre contas locais e actors remotos.

- `RemoteFollower`  — actor remoto que segue uma conta local. Criado num
  Follow verificado, removido num Undo(Follow) do mesmo actor.
- `RemoteFollowing` — actor remoto que uma conta local segue. Criado só depois
  que o Follow enviado recebeu 2xx, removido no unfollow.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class RemoteFollower(Base):
    __tablename__ = "remote_followers"

    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )

    # URL canônica do actor remoto, identificador único no Fediverso
    # ex: "https://mastodon.social/users/fulano"
    follower_actor_uri: Mapped[str] = mapped_column(String(2048), primary_key=True)

    # Inbox do actor em cache para evitar re-fetch a cada entrega
    follower_inbox: Mapped[str] = mapped_column(String(2048))
    follower_shared_inbox: Mapped[str | None] = mapped_column(String(2048))

    # insert_default é avaliado pelo SQLAlchemy no momento do INSERT,
    # garantindo o timezone correto independente da configuração do sistema
    followed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), insert_default=utcnow
    )

    @property
    def delivery_inbox(self) -> str:
        """Shared inbox quando existir: uma entrega por servidor de origem."""
        return self.follower_shared_inbox or self.follower_inbox

    def __repr__(self) -> str:
        return f"<RemoteFollower account_id={self.account_id!r} actor={self.follower_actor_uri!r}>"


class RemoteFollowing(Base):
    __tablename__ = "remote_following"

    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    actor_uri: Mapped[str] = mapped_column(String(2048), primary_key=True)
    actor_inbox: Mapped[str] = mapped_column(String(2048))
    followed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), insert_default=utcnow
    )

    def __repr__(self) -> str:
        return f"<RemoteFollowing account_id={self.account_id!r} actor={self.actor_uri!r}>"
