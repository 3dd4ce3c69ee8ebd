"""
app/services/tasks.py

Registro de tasks "fire-and-forget" (fan-out de entregas, notificações,
descoberta de domínios).

O event loop guarda só referências fracas às tasks: sem este registro
uma task em andamento pode ser coletada pelo GC.
"""

import asyncio
import logging
from typing import Coroutine

log = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        log.error(f"Task em background falhou: {error!r}", exc_info=error)


def spawn(coro: Coroutine) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending() -> int:
    return len(_background_tasks)


async def drain(timeout: float | None = None) -> None:
    """Espera as tasks pendentes (shutdown e testes)."""
    while _background_tasks:
        _, not_done = await asyncio.wait(set(_background_tasks), timeout=timeout)
        if not_done:
            log.warning(f"{len(not_done)} task(s) em background não terminaram a tempo")
            return
