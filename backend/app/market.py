"""
=============================================================================
TRUEQUE - Simulador de Mercado
=============================================================================
Indicadores de cambio por recurso (solo visuales) y precios de mercado.

- Fluctuación ambiental cada 5 segundos, independiente de la ronda
- Re-aleatorización completa al iniciar cada ronda
- Actualización de precios por parte del host
=============================================================================
"""

import logging
import random
from typing import Dict, Mapping, Optional

from .config import GameConfig
from .game_state import RESOURCES, GameSession

logger = logging.getLogger(__name__)


class MarketSimulator:
    """
    Muta los indicadores de mercado de una sesión.
    El generador aleatorio es inyectable solo para pruebas; no hay semilla fija.
    """

    def __init__(self, rng: random.Random = None):
        self.rng = rng or random.Random()

    def fluctuate(self, session: GameSession):
        """Deriva ambiental: pequeño paso aleatorio acotado a ±CHANGE_LIMIT."""
        limit = GameConfig.CHANGE_LIMIT
        for change in session.market_changes:
            step = self.rng.randint(GameConfig.FLUCTUATION_MIN, GameConfig.FLUCTUATION_MAX)
            change.change = max(-limit, min(limit, change.change + step))

    def rerandomize(self, session: GameSession):
        """Nuevos indicadores para la ronda que comienza."""
        spread = GameConfig.ROUND_CHANGE_RANGE
        for change in session.market_changes:
            change.change = self.rng.randint(-spread, spread)

    def apply_burn_pressure(self, session: GameSession, resource: str, amount: int):
        change = session.change_for(resource)
        if change:
            change.change += amount * GameConfig.BURN_PRESSURE

    def apply_price_update(
        self,
        session: GameSession,
        prices: Mapping[str, Optional[int]]
    ) -> Dict[str, int]:
        """
        Aplica precios enviados por el host ({gold_price, water_price, oil_price}).
        Entradas ausentes o no positivas conservan el precio anterior.
        """
        updated = dict(session.market_prices)
        for resource in RESOURCES:
            value = prices.get(f"{resource}_price")
            if value:
                updated[resource] = value
        session.market_prices = updated
        session.touch()
        logger.info(f"[MARKET] Prices updated for game {session.game_id}: {updated}")
        return updated


def price_of(session: GameSession, resource: str) -> int:
    return session.market_prices.get(resource, GameConfig.DEFAULT_MARKET_PRICES[resource])
