"""
=============================================================================
TRUEQUE - Resolución de Acciones de Jugador
=============================================================================
Compra, venta, quema y sabotaje contra el mercado compartido.

Cualquier precondición incumplida es un resultado definido "no pasa nada":
sin cambios de estado, sin entrada en el log y sin error hacia el cliente.
=============================================================================
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..models import GameStatus
from .config import GameConfig
from .game_state import GameSession, Player, Resource
from .market import MarketSimulator, price_of

logger = logging.getLogger(__name__)


class Action(Enum):
    BUY = "Buy"
    SELL = "Sell"
    BURN = "Burn"
    SABOTAGE = "Sabotage"

    @classmethod
    def parse(cls, value: Any) -> Optional["Action"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        for action in cls:
            if action.value.lower() == value.strip().lower():
                return action
        return None


@dataclass
class ActionRequest:
    """Acción ya normalizada."""
    player_id: str
    action: Action
    resource: Resource
    amount: int
    target_player_id: Optional[str] = None


class ActionResolver:
    """Aplica una acción sobre la sesión y retorna el texto del log (o None)."""

    def __init__(self, market: MarketSimulator = None):
        self.market = market or MarketSimulator()

    def resolve(
        self,
        session: Optional[GameSession],
        player_id: str,
        action: Any,
        resource: Any,
        amount: Any,
        target_player_id: Optional[str] = None
    ) -> Optional[str]:
        request = self._normalize(player_id, action, resource, amount, target_player_id)
        if request is None or session is None or session.status != GameStatus.PLAYING:
            return None

        player = session.find_player(request.player_id)
        if player is None:
            return None

        handler = {
            Action.BUY: self._buy,
            Action.SELL: self._sell,
            Action.BURN: self._burn,
            Action.SABOTAGE: self._sabotage,
        }[request.action]

        text = handler(session, player, request)
        if text is None:
            return None

        player.recompute_total()
        session.record_action(text)
        session.touch()
        logger.debug(f"[ACTION] {session.game_id}: {text}")
        return text

    @staticmethod
    def _normalize(player_id, action, resource, amount, target_player_id) -> Optional[ActionRequest]:
        parsed_action = Action.parse(action)
        parsed_resource = Resource.parse(resource)
        if parsed_action is None or parsed_resource is None:
            return None
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return None
        return ActionRequest(
            player_id=player_id,
            action=parsed_action,
            resource=parsed_resource,
            amount=amount,
            target_player_id=target_player_id,
        )

    # =========================================================================
    # ACCIONES
    # =========================================================================

    def _buy(self, session: GameSession, player: Player, request: ActionRequest) -> Optional[str]:
        resource = request.resource.value
        cost = price_of(session, resource) * request.amount
        if player.tokens < cost:
            return None
        player.tokens -= cost
        player.assets[resource] += request.amount
        return f"{player.name} bought {request.amount} {request.resource.label} for {cost} tokens"

    def _sell(self, session: GameSession, player: Player, request: ActionRequest) -> Optional[str]:
        resource = request.resource.value
        if player.assets[resource] < request.amount:
            return None
        proceeds = math.floor(price_of(session, resource) * request.amount * GameConfig.SELL_MULTIPLIER)
        player.tokens += proceeds
        player.assets[resource] -= request.amount
        return f"{player.name} sold {request.amount} {request.resource.label} for {proceeds} tokens"

    def _burn(self, session: GameSession, player: Player, request: ActionRequest) -> Optional[str]:
        resource = request.resource.value
        if player.assets[resource] < request.amount:
            return None
        player.assets[resource] -= request.amount
        # Presión visual: los precios no cambian
        self.market.apply_burn_pressure(session, resource, request.amount)
        return f"{player.name} burned {request.amount} {request.resource.label} to boost market price"

    def _sabotage(self, session: GameSession, player: Player, request: ActionRequest) -> Optional[str]:
        resource = request.resource.value
        if player.tokens < GameConfig.SABOTAGE_COST or not request.target_player_id:
            return None
        target = session.find_player(request.target_player_id)
        if target is None or target.assets[resource] < request.amount:
            return None

        player.tokens -= GameConfig.SABOTAGE_COST
        target.assets[resource] = max(0, target.assets[resource] - request.amount)
        target.recompute_total()
        return f"{player.name} sabotaged {target.name}'s {request.resource.label} reserves"
