"""
=============================================================================
TRUEQUE - Temporizador de Rondas
=============================================================================
Máquina de estados por sesión, avanzada con un tick por segundo:

    Counting --(llega a 0)--> RoundDelay --(llega a 0)--> Counting (ronda+1)
                                         \--(ronda+1 > max)--> Finished

Este módulo es puro: muta la sesión y reporta qué ocurrió. El coordinador
se encarga de programar los ticks, persistir y emitir los eventos.
=============================================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from ..models import GameStatus
from .config import GameConfig
from .game_state import Counting, Finished, GameSession, RESOURCES, RoundDelay
from .market import MarketSimulator, price_of


class TickEvent(Enum):
    """Transiciones observables producidas por un tick."""
    ROUND_ENDED = "ROUND_ENDED"
    ROUND_STARTED = "ROUND_STARTED"
    GAME_FINISHED = "GAME_FINISHED"


@dataclass
class TickOutcome:
    """Resultado de un tick: transiciones ocurridas y si la sesión sigue viva."""
    events: List[TickEvent] = field(default_factory=list)
    completed_round: int = 0
    active: bool = True

    def has(self, event: TickEvent) -> bool:
        return event in self.events


class RoundTimer:
    """Avanza la fase de ronda de una sesión."""

    def __init__(self, market: MarketSimulator = None):
        self.market = market or MarketSimulator()

    def start(self, session: GameSession):
        """Instala la cuenta regresiva de la ronda actual y habilita los ticks."""
        session.round.phase = Counting(seconds_remaining=GameConfig.ROUND_DURATION)
        session.timer_active = True

    def tick(self, session: GameSession) -> TickOutcome:
        """Aplica un segundo de tiempo de juego."""
        outcome = TickOutcome()
        if not session.timer_active or session.status != GameStatus.PLAYING:
            outcome.active = False
            return outcome

        phase = session.round.phase

        if isinstance(phase, Counting):
            phase.seconds_remaining -= 1
            if phase.seconds_remaining <= 0:
                session.round.phase = RoundDelay(seconds_remaining=GameConfig.ROUND_DELAY)
                outcome.events.append(TickEvent.ROUND_ENDED)
                outcome.completed_round = session.round.current

        elif isinstance(phase, RoundDelay):
            phase.seconds_remaining -= 1
            if phase.seconds_remaining <= 0:
                self._advance_round(session, outcome)

        else:
            outcome.active = False

        session.touch()
        return outcome

    def _advance_round(self, session: GameSession, outcome: TickOutcome):
        """Archiva el log de la ronda y pasa a la siguiente (o termina)."""
        completed = session.round.current
        if session.recent_actions:
            session.action_history[completed] = list(session.recent_actions)
        session.recent_actions = []
        session.round.current = completed + 1
        outcome.completed_round = completed

        if session.round.current > session.round.max_rounds:
            finish_game(session)
            outcome.events.append(TickEvent.GAME_FINISHED)
            outcome.active = False
            return

        session.round.phase = Counting(seconds_remaining=GameConfig.ROUND_DURATION)
        self.market.rerandomize(session)
        outcome.events.append(TickEvent.ROUND_STARTED)


# =============================================================================
# PUNTUACIÓN FINAL
# =============================================================================

def player_score(session: GameSession, player) -> int:
    return player.tokens + sum(
        player.assets.get(resource, 0) * price_of(session, resource)
        for resource in RESOURCES
    )


def compute_final_scores(session: GameSession) -> List[Dict[str, Any]]:
    """
    Ranking por puntuación descendente.
    sorted() es estable: en empate gana el jugador que se unió primero.
    """
    scored = [
        {**player.to_dict(), "finalScore": player_score(session, player)}
        for player in session.players
    ]
    return sorted(scored, key=lambda entry: entry["finalScore"], reverse=True)


def finish_game(session: GameSession) -> List[Dict[str, Any]]:
    """Cierra la secuencia de rondas y fija ganador y puntuaciones."""
    final_scores = compute_final_scores(session)
    session.status = GameStatus.FINISHED
    session.timer_active = False
    session.round.phase = Finished()
    session.final_scores = final_scores
    session.winner = final_scores[0] if final_scores else None
    session.touch()
    return final_scores
