"""
=============================================================================
TRUEQUE - Registros del Coordinador
=============================================================================
Tres mapas explícitos, inyectados en el coordinador:

- SessionStore:       game_id -> GameSession (dueño único del estado vivo)
- ConnectionRegistry: socket_id -> ConnectionBinding
- TimerRegistry:      game_id -> tarea del temporizador + handle de inactividad
=============================================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..models import GameStatus
from .game_state import GameSession

logger = logging.getLogger(__name__)


# =============================================================================
# SESIONES
# =============================================================================

class SessionStore:
    """Sesiones vivas en memoria."""

    def __init__(self):
        self._sessions: Dict[str, GameSession] = {}

    def add(self, session: GameSession):
        self._sessions[session.game_id] = session

    def get(self, game_id: Optional[str]) -> Optional[GameSession]:
        if not game_id:
            return None
        return self._sessions.get(game_id)

    def remove(self, game_id: str) -> Optional[GameSession]:
        return self._sessions.pop(game_id, None)

    def ids(self) -> List[str]:
        return list(self._sessions)

    def playing(self) -> List[GameSession]:
        return [s for s in self._sessions.values() if s.status == GameStatus.PLAYING]

    def __contains__(self, game_id: str) -> bool:
        return game_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


# =============================================================================
# CONEXIONES
# =============================================================================

@dataclass
class ConnectionBinding:
    """A qué sesión y jugador pertenece una conexión."""
    game_id: str
    player_id: str
    player_name: str


class ConnectionRegistry:
    """socket_id -> binding."""

    def __init__(self):
        self._bindings: Dict[str, ConnectionBinding] = {}

    def bind(self, sid: str, game_id: str, player_id: str, player_name: str) -> ConnectionBinding:
        binding = ConnectionBinding(game_id=game_id, player_id=player_id, player_name=player_name)
        self._bindings[sid] = binding
        return binding

    def get(self, sid: str) -> Optional[ConnectionBinding]:
        return self._bindings.get(sid)

    def unbind(self, sid: str) -> Optional[ConnectionBinding]:
        return self._bindings.pop(sid, None)

    def sids_for_game(self, game_id: str) -> List[str]:
        return [sid for sid, b in self._bindings.items() if b.game_id == game_id]

    def unbind_game(self, game_id: str) -> List[str]:
        """Elimina todos los bindings de una sesión y retorna sus socket ids."""
        sids = self.sids_for_game(game_id)
        for sid in sids:
            del self._bindings[sid]
        return sids

    def __len__(self) -> int:
        return len(self._bindings)


# =============================================================================
# TEMPORIZADORES
# =============================================================================

class TimerRegistry:
    """
    Una tarea de rondas y un handle de inactividad por sesión.
    Cancelar es idempotente; una tarea nunca se cancela a sí misma.
    """

    def __init__(self):
        self._round_tasks: Dict[str, asyncio.Task] = {}
        self._inactivity: Dict[str, asyncio.TimerHandle] = {}

    # Temporizador de rondas

    def set_round_task(self, game_id: str, task: asyncio.Task):
        self.cancel_round_task(game_id)
        self._round_tasks[game_id] = task

    def has_round_task(self, game_id: str) -> bool:
        task = self._round_tasks.get(game_id)
        return task is not None and not task.done()

    def cancel_round_task(self, game_id: str) -> Optional[asyncio.Task]:
        """Retorna la tarea si fue cancelada."""
        task = self._round_tasks.pop(game_id, None)
        if task is None or task.done():
            return None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is current:
            return None
        task.cancel()
        return task

    # Inactividad

    def set_inactivity(self, game_id: str, handle: asyncio.TimerHandle):
        self.cancel_inactivity(game_id)
        self._inactivity[game_id] = handle

    def has_inactivity(self, game_id: str) -> bool:
        return game_id in self._inactivity

    def cancel_inactivity(self, game_id: str):
        handle = self._inactivity.pop(game_id, None)
        if handle is not None:
            handle.cancel()

    # Conjunto

    def cancel(self, game_id: str) -> Optional[asyncio.Task]:
        self.cancel_inactivity(game_id)
        return self.cancel_round_task(game_id)

    def cancel_all(self, game_ids: Iterable[str] = None) -> List[asyncio.Task]:
        """Cancela todo y retorna las tareas de rondas canceladas para esperarlas."""
        ids = set(self._round_tasks) | set(self._inactivity) if game_ids is None else set(game_ids)
        cancelled = [task for task in (self.cancel(game_id) for game_id in ids) if task is not None]
        if ids:
            logger.info(f"[TIMER] Cancelled timers for {len(ids)} games")
        return cancelled
