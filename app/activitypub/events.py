"""
app/activitypub/events.py

Conversão entre eventos e objetos ActivityStreams `Event`.

Saída:  `event_to_ap()` renderiza um evento local.
Entrada: `normalize_event()` resolve as variações de formato dos servidores
remotos (location como string ou Place/PostalAddress, imagem em `attachment`
ou `image`, attributedTo como string/lista/objeto) num único passo;
`store_remote_event()` faz o upsert com checagem de dono.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.activitypub.actor import AS_CONTEXT, AS_PUBLIC, event_url, to_iso8601
from app.activitypub.resolver import as_uri
from app.config import settings
from app.models.account import Event
from app.models.event import RemoteEvent
from app.services.sanitize import sanitize_html, strip_html

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Saída
# ---------------------------------------------------------------------------

def event_to_ap(event: Event, owner_actor_url: str) -> dict:
    url = event_url(event.id)
    ap_event = {
        "@context": AS_CONTEXT,
        "id": url,
        "type": "Event",
        "name": event.title,
        "startTime": to_iso8601(event.start_date),
        "published": to_iso8601(event.created_at),
        "updated": to_iso8601(event.updated_at),
        "url": event.url or url,
        "attributedTo": owner_actor_url,
        "to": [AS_PUBLIC],
        "cc": [f"{owner_actor_url}/followers"],
        "mediaType": "text/html",
    }

    if event.description:
        ap_event["content"] = event.description
    if event.end_date:
        ap_event["endTime"] = to_iso8601(event.end_date)

    if event.location_name:
        location = {"type": "Place", "name": event.location_name}
        if event.location_address:
            location["address"] = {
                "type": "PostalAddress",
                "streetAddress": event.location_address,
            }
        if event.location_latitude is not None:
            location["latitude"] = event.location_latitude
        if event.location_longitude is not None:
            location["longitude"] = event.location_longitude
        ap_event["location"] = location

    if event.image_url:
        attachment = {
            "type": "Document",
            "url": event.image_url,
            "mediaType": event.image_media_type or "image/jpeg",
            "name": event.image_alt or "",
        }
        if event.image_attribution:
            try:
                attachment["attribution"] = json.loads(event.image_attribution)
            except ValueError:
                log.debug(f"Atribuição de imagem inválida no evento {event.id}")
        ap_event["attachment"] = [attachment]

    tags = sorted(t.tag for t in event.tags)
    if tags:
        ap_event["tag"] = [
            {"type": "Hashtag", "name": tag if tag.startswith("#") else f"#{tag}"}
            for tag in tags
        ]

    return ap_event


# ---------------------------------------------------------------------------
# Entrada
# ---------------------------------------------------------------------------

@dataclass
class NormalizedLocation:
    name: str | None = None
    address: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass
class NormalizedImage:
    url: str | None = None
    media_type: str | None = None
    alt: str | None = None
    attribution: dict | None = None


@dataclass
class StoreResult:
    event: RemoteEvent
    created: bool
    changes: list[str] = field(default_factory=list)


def _text(value: Any) -> str | None:
    return strip_html(value) or None if isinstance(value, str) else None


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def normalize_location(raw: Any) -> NormalizedLocation:
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if isinstance(raw, str):
        return NormalizedLocation(name=_text(raw))
    if not isinstance(raw, dict):
        return NormalizedLocation()

    address = raw.get("address")
    if isinstance(address, dict):
        parts = [
            address.get(key)
            for key in ("streetAddress", "postalCode", "addressLocality", "addressCountry")
        ]
        address_text = ", ".join(p for p in (_text(p) for p in parts) if p) or None
    else:
        address_text = _text(address)

    return NormalizedLocation(
        name=_text(raw.get("name")),
        address=address_text,
        latitude=_number(raw.get("latitude")),
        longitude=_number(raw.get("longitude")),
    )


def normalize_image(obj: dict) -> NormalizedImage:
    candidates = obj.get("attachment") or []
    if isinstance(candidates, dict):
        candidates = [candidates]
    image = next(
        (a for a in candidates if isinstance(a, dict) and a.get("type") in ("Image", "Document")),
        None,
    )
    if image is None and isinstance(obj.get("image"), dict):
        image = obj["image"]
    if image is None:
        return NormalizedImage()

    url = image.get("url")
    if isinstance(url, list):
        url = url[0] if url else None
    if isinstance(url, dict):
        url = url.get("href")

    attribution = image.get("attribution")
    if isinstance(attribution, str):
        try:
            attribution = json.loads(attribution)
        except ValueError:
            attribution = None

    return NormalizedImage(
        url=url if isinstance(url, str) else None,
        media_type=image.get("mediaType") if isinstance(image.get("mediaType"), str) else None,
        alt=_text(image.get("name")),
        attribution=attribution if isinstance(attribution, dict) else None,
    )


def normalize_tags(raw: Any) -> list[str]:
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    tags = []
    for tag in raw:
        name = tag.get("name") if isinstance(tag, dict) else None
        if not isinstance(name, str):
            continue
        clean = strip_html(name.lstrip("#"))
        if clean and clean not in tags:
            tags.append(clean)
    return tags


def attributed_to(obj: dict) -> str | None:
    return as_uri(obj.get("attributedTo"))


def normalize_event(obj: dict) -> dict | None:
    """Colunas de `RemoteEvent` para um objeto Event; None se faltar id ou início."""
    uri = as_uri(obj.get("id"))
    start = obj.get("startTime") or obj.get("startDate")
    if not uri or not isinstance(start, str):
        return None

    end = obj.get("endTime") or obj.get("endDate")
    title = obj.get("name") if isinstance(obj.get("name"), str) else obj.get("title")
    content = obj.get("content")
    url = obj.get("url")
    if not isinstance(url, str):
        url = as_uri(url) if isinstance(url, dict) else None

    location = normalize_location(obj.get("location"))
    image = normalize_image(obj)

    return {
        "uri": uri,
        "title": strip_html(title) if isinstance(title, str) else "",
        "description": sanitize_html(content) if isinstance(content, str) else None,
        "start_date": start,
        "end_date": end if isinstance(end, str) else None,
        "location_name": location.name,
        "location_address": location.address,
        "location_latitude": location.latitude,
        "location_longitude": location.longitude,
        "image_url": image.url,
        "image_media_type": image.media_type,
        "image_alt": image.alt,
        "image_attribution": image.attribution,
        "url": url,
        "tags": normalize_tags(obj.get("tag")),
        "raw_json": json.dumps(obj)[: int(settings.remote_raw_json_limit)],
        "published": obj.get("published") if isinstance(obj.get("published"), str) else None,
        "updated": obj.get("updated") if isinstance(obj.get("updated"), str) else None,
    }


def diff_material_fields(existing: RemoteEvent, fields: dict) -> list[str]:
    changes = []
    if existing.title != fields["title"]:
        changes.append("title")
    if existing.start_date != fields["start_date"] or existing.end_date != fields["end_date"]:
        changes.append("time")
    if (existing.location_name or "") != (fields["location_name"] or "") or (
        existing.location_address or ""
    ) != (fields["location_address"] or ""):
        changes.append("location")
    return changes


async def store_remote_event(
    session: AsyncSession,
    obj: dict,
    owner_uri: str,
) -> StoreResult | None:
    """
    Upsert de um Event remoto. Recusa (None) quando o evento já pertence a
    outro actor ou quando o objeto não tem id/início.
    """
    fields = normalize_event(obj)
    if fields is None:
        log.info(f"Event sem id ou startTime ignorado (dono {owner_uri})")
        return None

    existing = await session.get(RemoteEvent, fields["uri"])
    if existing is not None and existing.actor_uri != owner_uri:
        log.warning(
            f"Recusando escrita em {fields['uri']}: {owner_uri} não é o dono ({existing.actor_uri})"
        )
        return None

    if existing is None:
        event = RemoteEvent(actor_uri=owner_uri, canceled=False, **fields)
        session.add(event)
        await session.flush()
        return StoreResult(event=event, created=True)

    changes = diff_material_fields(existing, fields)
    for name, value in fields.items():
        setattr(existing, name, value)
    existing.canceled = False
    await session.flush()
    return StoreResult(event=existing, created=False, changes=changes)
