import html
import re
from datetime import datetime

from app.config import settings
from app.database import as_utc
from app.models.account import Account

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"


def base_url() -> str:
    return str(settings.base_url).rstrip("/")


def actor_url(username: str) -> str:
    return f"{base_url()}/users/{username}"


def key_id_for(username: str) -> str:
    return f"{actor_url(username)}#main-key"


def event_url(event_id: str) -> str:
    return f"{base_url()}/events/{event_id}"


def shared_inbox_url() -> str:
    return f"{base_url()}/inbox"


def local_username_for(uri: str | None) -> str | None:
    """Extrai o username se o IRI for de um actor deste servidor."""
    if not uri:
        return None
    match = re.fullmatch(re.escape(base_url()) + r"/users/([^/?#]+)", uri)
    return match.group(1) if match else None


def to_iso8601(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


def build_actor(account: Account, public_key_pem: str) -> dict:
    url = actor_url(account.username)

    actor = {
        "@context": [AS_CONTEXT, SECURITY_CONTEXT],
        "id": url,
        "type": "Person",
        "preferredUsername": account.username,
        "name": account.display_name or account.username,
        "summary": account.bio or "",
        "url": f"{base_url()}/@{account.username}",
        "inbox": f"{url}/inbox",
        "outbox": f"{url}/outbox",
        "followers": f"{url}/followers",
        "following": f"{url}/following",
        "manuallyApprovesFollowers": False,
        "discoverable": True,
        "publicKey": {
            "id": key_id_for(account.username),
            "owner": url,
            "publicKeyPem": public_key_pem,
        },
        "endpoints": {"sharedInbox": shared_inbox_url()},
    }

    if account.created_at:
        actor["published"] = to_iso8601(account.created_at)
    if account.avatar_url:
        actor["icon"] = {"type": "Image", "url": account.avatar_url}
    if account.website_url:
        website = html.escape(account.website_url, quote=True)
        actor["attachment"] = [{
            "type": "PropertyValue",
            "name": "Website",
            "value": (
                f'<a href="{website}" rel="me nofollow noopener noreferrer" '
                f'target="_blank">{website}</a>'
            ),
        }]

    return actor
