"""
=============================================================================
TRUEQUE - Política de Identidad y Relevo del Host
=============================================================================
"¿Es este jugador el host?" se resuelve con una lista ordenada de criterios,
evaluada en cortocircuito (basta con uno):

1. HOST_ID:     el id del jugador coincide con session.host
2. HOST_WALLET: la wallet del jugador coincide con la del host registrado
                (cubre reingresos con id nuevo y la misma wallet)
3. FIRST_SEAT:  el jugador es el primero de la lista (sesiones sin wallet)
=============================================================================
"""

import logging
from typing import Callable, Optional, Sequence, Tuple

from .game_state import GameSession, Player

logger = logging.getLogger(__name__)

HostMatcher = Callable[[GameSession, str, Optional[Player]], bool]


def matches_host_id(session: GameSession, player_id: str, caller: Optional[Player]) -> bool:
    return session.host is not None and player_id == session.host


def matches_host_wallet(session: GameSession, player_id: str, caller: Optional[Player]) -> bool:
    if caller is None or not caller.wallet_address:
        return False
    host = session.find_player(session.host)
    return host is not None and host.wallet_address == caller.wallet_address


def matches_first_seat(session: GameSession, player_id: str, caller: Optional[Player]) -> bool:
    return bool(session.players) and session.players[0].id == player_id


DEFAULT_MATCHERS: Tuple[Tuple[str, HostMatcher], ...] = (
    ("HOST_ID", matches_host_id),
    ("HOST_WALLET", matches_host_wallet),
    ("FIRST_SEAT", matches_first_seat),
)


class HostPolicy:
    """Política nombrada de identidad de host y relevo ante salidas."""

    def __init__(self, matchers: Sequence[Tuple[str, HostMatcher]] = DEFAULT_MATCHERS):
        self.matchers = tuple(matchers)

    def matching_criterion(self, session: GameSession, player_id: str) -> Optional[str]:
        """Nombre del primer criterio que reconoce al jugador como host."""
        caller = session.find_player(player_id)
        for name, matcher in self.matchers:
            if matcher(session, player_id, caller):
                return name
        return None

    def is_host(self, session: GameSession, player_id: str) -> bool:
        criterion = self.matching_criterion(session, player_id)
        logger.debug(
            f"[HOST] Verification for {player_id} in {session.game_id}: "
            f"host={session.host} criterion={criterion}"
        )
        return criterion is not None

    def on_disconnect(self, session: GameSession, player_id: str) -> Optional[str]:
        """
        Si se desconecta el host, pasa al primer jugador aún conectado.
        Sin jugadores conectados el host queda como estaba (pendiente de cierre).
        """
        if session.host != player_id:
            return session.host
        connected = [p for p in session.players if p.connected]
        if connected:
            session.host = connected[0].id
            logger.info(f"[HOST] Game {session.game_id}: host moved {player_id} -> {session.host}")
        else:
            logger.info(f"[HOST] Game {session.game_id}: no connected players, host unchanged")
        return session.host

    def on_exit(self, session: GameSession, player_id: str) -> Optional[str]:
        """Tras una salida explícita, el host debe seguir siendo un jugador presente."""
        if session.host != player_id or not session.players:
            return session.host
        remaining = [p for p in session.players if p.id not in session.exited_players]
        connected = [p for p in remaining if p.connected]
        candidates = connected or remaining
        if candidates:
            session.host = candidates[0].id
            logger.info(f"[HOST] Game {session.game_id}: host exited, new host {session.host}")
        return session.host
