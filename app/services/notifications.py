"""
app/services/notifications.py

Ponte entre o núcleo de federação e as camadas de notificação/UI.

A aplicação registra hooks no startup; o inbox chama `notify_event_updated()`
e `notify_event_cancelled()`, que agendam cada hook em background e voltam
imediatamente. Uma falha num hook é logada pelo registro de tasks e não
afeta o processamento da atividade.
"""

import logging
from typing import Awaitable, Callable

from app.services.tasks import spawn

log = logging.getLogger(__name__)

EventUpdatedHook = Callable[[str, dict, list[str]], Awaitable[None]]
EventCancelledHook = Callable[[str, dict], Awaitable[None]]

_updated_hooks: list[EventUpdatedHook] = []
_cancelled_hooks: list[EventCancelledHook] = []


def register_event_updated_hook(hook: EventUpdatedHook) -> EventUpdatedHook:
    _updated_hooks.append(hook)
    return hook


def register_event_cancelled_hook(hook: EventCancelledHook) -> EventCancelledHook:
    _cancelled_hooks.append(hook)
    return hook


def clear_hooks() -> None:
    _updated_hooks.clear()
    _cancelled_hooks.clear()


def notify_event_updated(event_uri: str, snapshot: dict, changes: list[str]) -> None:
    if not changes:
        return
    log.info(f"Evento remoto alterado ({', '.join(changes)}): {event_uri}")
    for hook in list(_updated_hooks):
        spawn(hook(event_uri, snapshot, list(changes)))


def notify_event_cancelled(event_uri: str, snapshot: dict) -> None:
    log.info(f"Evento remoto cancelado: {event_uri}")
    for hook in list(_cancelled_hooks):
        spawn(hook(event_uri, snapshot))
