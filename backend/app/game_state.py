"""
=============================================================================
TRUEQUE - Estado en Memoria de las Sesiones
=============================================================================
Estructuras autoritativas de una sesión: jugadores, mercado y ronda.

La fase de ronda es una unión etiquetada (Counting | RoundDelay | Finished):
nunca hay cuenta regresiva y pausa activas a la vez.
=============================================================================
"""

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from ..models import GameStatus, Visibility
from .config import GameConfig


# =============================================================================
# ENUMS
# =============================================================================

class Resource(Enum):
    """Recursos comerciables."""
    GOLD = "gold"
    WATER = "water"
    OIL = "oil"

    @classmethod
    def parse(cls, value: Any) -> Optional["Resource"]:
        """Acepta 'Gold', 'gold', 'GOLD'; None si no es un recurso."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @property
    def label(self) -> str:
        return self.value.capitalize()


RESOURCES = [r.value for r in Resource]


# =============================================================================
# IDENTIFICADORES
# =============================================================================

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_game_id() -> str:
    """Timestamp en base 36 + 6 caracteres aleatorios, en mayúsculas."""
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"{_to_base36(int(time.time() * 1000))}{suffix}".upper()


def generate_player_id() -> str:
    return "player_" + "".join(random.choices(_BASE36, k=9))


def format_percentage(change: int) -> str:
    return f"{'+' if change > 0 else ''}{change}%"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# JUGADOR
# =============================================================================

@dataclass
class Player:
    """Jugador dentro de una sesión."""
    id: str
    name: str
    socket_id: Optional[str] = None
    wallet_address: Optional[str] = None
    tokens: int = GameConfig.STARTING_TOKENS
    assets: Dict[str, int] = field(default_factory=lambda: {r: 0 for r in RESOURCES})
    total_assets: int = 0
    connected: bool = True

    def recompute_total(self) -> int:
        self.total_assets = sum(self.assets.get(r, 0) for r in RESOURCES)
        return self.total_assets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "socketId": self.socket_id,
            "walletAddress": self.wallet_address,
            "tokens": self.tokens,
            "assets": dict(self.assets),
            "totalAssets": self.total_assets,
            "connected": self.connected,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Player":
        assets = data.get("assets") or {}
        player = cls(
            id=str(data.get("id")),
            name=data.get("name") or "Unknown",
            socket_id=data.get("socketId"),
            wallet_address=data.get("walletAddress"),
            tokens=int(data.get("tokens", GameConfig.STARTING_TOKENS)),
            assets={r: max(0, int(assets.get(r, 0))) for r in RESOURCES},
            connected=bool(data.get("connected", True)),
        )
        player.recompute_total()
        return player


# =============================================================================
# MERCADO
# =============================================================================

@dataclass
class MarketChange:
    """Indicador visual de presión sobre un recurso."""
    resource: str
    change: int = 0

    @property
    def percentage(self) -> str:
        return format_percentage(self.change)

    def to_dict(self) -> Dict[str, Any]:
        return {"resource": self.resource, "change": self.change, "percentage": self.percentage}


def default_market_changes() -> List[MarketChange]:
    return [MarketChange(resource=r) for r in RESOURCES]


def default_market_prices() -> Dict[str, int]:
    return dict(GameConfig.DEFAULT_MARKET_PRICES)


# =============================================================================
# RONDA (máquina de estados etiquetada)
# =============================================================================

@dataclass
class Counting:
    """Cuenta regresiva normal de la ronda."""
    seconds_remaining: int = GameConfig.ROUND_DURATION


@dataclass
class RoundDelay:
    """Pausa fija entre rondas."""
    seconds_remaining: int = GameConfig.ROUND_DELAY


@dataclass
class Finished:
    """Estado terminal: no hay más rondas."""
    pass


RoundPhase = Union[Counting, RoundDelay, Finished]


@dataclass
class RoundState:
    current: int = 1
    max_rounds: int = GameConfig.MAX_ROUNDS
    phase: RoundPhase = field(default_factory=Counting)

    def time_remaining(self) -> Dict[str, int]:
        seconds = self.phase.seconds_remaining if isinstance(self.phase, Counting) else 0
        hours, rest = divmod(seconds, 3600)
        minutes, seconds = divmod(rest, 60)
        return {"hours": hours, "minutes": minutes, "seconds": seconds}

    def delay_snapshot(self) -> Optional[Dict[str, Any]]:
        if isinstance(self.phase, RoundDelay):
            return {"active": True, "timeRemaining": self.phase.seconds_remaining}
        return None


# =============================================================================
# SESIÓN
# =============================================================================

@dataclass
class GameSession:
    """Sesión de juego autoritativa en memoria."""
    game_id: str
    name: str
    visibility: Visibility = Visibility.PUBLIC
    status: GameStatus = GameStatus.WAITING

    players: List[Player] = field(default_factory=list)
    host: Optional[str] = None

    round: RoundState = field(default_factory=RoundState)
    market_prices: Dict[str, int] = field(default_factory=default_market_prices)
    market_changes: List[MarketChange] = field(default_factory=default_market_changes)

    recent_actions: List[str] = field(default_factory=list)
    action_history: Dict[int, List[str]] = field(default_factory=dict)
    exited_players: Set[str] = field(default_factory=set)

    timer_active: bool = False
    winner: Optional[Dict[str, Any]] = None
    final_scores: List[Dict[str, Any]] = field(default_factory=list)

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def current_players(self) -> int:
        return len(self.players)

    @property
    def is_private(self) -> bool:
        return self.visibility == Visibility.PRIVATE

    def is_full(self) -> bool:
        return len(self.players) >= GameConfig.MAX_PLAYERS

    def touch(self):
        self.updated_at = _utcnow()

    def find_player(self, player_id: Optional[str]) -> Optional[Player]:
        if player_id is None:
            return None
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def remove_player(self, player_id: str) -> Optional[Player]:
        player = self.find_player(player_id)
        if player:
            self.players = [p for p in self.players if p.id != player_id]
        return player

    def change_for(self, resource: str) -> Optional[MarketChange]:
        for change in self.market_changes:
            if change.resource == resource:
                return change
        return None

    def record_action(self, text: str):
        """Agrega al inicio de recentActions, conservando las más recientes."""
        self.recent_actions.insert(0, text)
        del self.recent_actions[GameConfig.MAX_RECENT_ACTIONS:]

    # =========================================================================
    # SERIALIZACIÓN
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot completo enviado como game-state."""
        return {
            "gameId": self.game_id,
            "gameName": self.name,
            "isPrivate": self.is_private,
            "status": self.status.value,
            "players": [p.to_dict() for p in self.players],
            "currentPlayers": self.current_players,
            "maxPlayers": GameConfig.MAX_PLAYERS,
            "host": self.host,
            "currentRound": self.round.current,
            "maxRounds": self.round.max_rounds,
            "timeRemaining": self.round.time_remaining(),
            "roundDelay": self.round.delay_snapshot(),
            "marketChanges": [c.to_dict() for c in self.market_changes],
            "marketPrices": dict(self.market_prices),
            "recentActions": list(self.recent_actions),
            "actionHistory": {str(k): list(v) for k, v in self.action_history.items()},
            "exitedPlayers": sorted(self.exited_players),
            "timerActive": self.timer_active,
            "winner": self.winner,
            "finalScores": self.final_scores,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    def players_snapshot(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.players]

    @classmethod
    def from_snapshot(
        cls,
        game_id: str,
        name: str,
        visibility: Visibility,
        status: GameStatus,
        players: List[Dict[str, Any]],
        game_state: Dict[str, Any],
        host: Optional[str],
        created_at: Optional[datetime] = None
    ) -> "GameSession":
        """
        Reconstruye una sesión desde el último checkpoint persistido.

        Los campos ausentes toman sus valores por defecto. La temporización
        en vuelo no se recupera: la ronda arranca del segundo guardado y
        el temporizador queda inactivo.
        """
        state = game_state or {}

        prices = default_market_prices()
        for resource, price in (state.get("marketPrices") or {}).items():
            if resource in prices and isinstance(price, (int, float)) and price > 0:
                prices[resource] = int(price)

        changes = default_market_changes()
        for raw in state.get("marketChanges") or []:
            for change in changes:
                if change.resource == raw.get("resource"):
                    change.change = int(raw.get("change", 0))

        remaining = state.get("timeRemaining") or {}
        seconds = (
            int(remaining.get("hours", 0)) * 3600
            + int(remaining.get("minutes", 0)) * 60
            + int(remaining.get("seconds", 0))
        ) if remaining else GameConfig.ROUND_DURATION
        round_state = RoundState(
            current=int(state.get("currentRound", 1)),
            max_rounds=int(state.get("maxRounds", GameConfig.MAX_ROUNDS)),
            phase=Counting(seconds_remaining=seconds or GameConfig.ROUND_DURATION),
        )
        if status == GameStatus.FINISHED:
            round_state.phase = Finished()

        return cls(
            game_id=game_id,
            name=name,
            visibility=visibility,
            status=status,
            players=[Player.from_dict(p) for p in players or []],
            host=host,
            round=round_state,
            market_prices=prices,
            market_changes=changes,
            recent_actions=list(state.get("recentActions") or [])[:GameConfig.MAX_RECENT_ACTIONS],
            action_history={
                int(k): list(v) for k, v in (state.get("actionHistory") or {}).items()
            },
            exited_players=set(state.get("exitedPlayers") or []),
            timer_active=False,
            winner=state.get("winner"),
            final_scores=list(state.get("finalScores") or []),
            created_at=created_at or _utcnow(),
        )
