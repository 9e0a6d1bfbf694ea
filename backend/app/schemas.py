"""
=============================================================================
TRUEQUE - Esquemas de Payloads (Pydantic)
=============================================================================
Validación de los eventos entrantes de Socket.IO y forma de los listados.
Los clientes envían camelCase; los campos se exponen en snake_case.
=============================================================================
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, PositiveInt

from ..models import GameRecord, GameStatus


# =============================================================================
# EVENTOS ENTRANTES
# =============================================================================

class CreateGamePayload(BaseModel):
    """create-game"""
    game_name: str = Field("Trading Game", alias="gameName", max_length=255)
    game_id: Optional[str] = Field(None, alias="gameId", max_length=50)
    player_name: str = Field(..., alias="playerName", min_length=1, max_length=100)
    is_private: bool = Field(False, alias="isPrivate")
    wallet_address: Optional[str] = Field(None, alias="walletAddress")

    class Config:
        populate_by_name = True


class JoinGamePayload(BaseModel):
    """join-game"""
    game_id: str = Field(..., alias="gameId", min_length=1)
    player_name: str = Field(..., alias="playerName", min_length=1, max_length=100)
    wallet_address: Optional[str] = Field(None, alias="walletAddress")

    class Config:
        populate_by_name = True


class MarketPricesPayload(BaseModel):
    """Precios enviados por el host; los ausentes conservan el valor previo."""
    gold_price: Optional[PositiveInt] = None
    water_price: Optional[PositiveInt] = None
    oil_price: Optional[PositiveInt] = None


class UpdateMarketPricesPayload(BaseModel):
    """update-market-prices"""
    market_prices: MarketPricesPayload = Field(..., alias="marketPrices")

    class Config:
        populate_by_name = True


class PlayerActionPayload(BaseModel):
    """
    player-action

    La acción y el recurso se validan en el resolvedor: un valor desconocido
    es un no-op silencioso, no un error de payload.
    """
    action: str
    resource: str
    amount: int
    target_player: Optional[str] = Field(None, alias="targetPlayer")

    class Config:
        populate_by_name = True


# =============================================================================
# LISTADOS
# =============================================================================

class PublicGameSummary(BaseModel):
    """Entrada de public-games-list y de GET /api/v1/games."""
    id: str
    name: str
    status: str
    current_players: int = Field(..., alias="currentPlayers")
    max_players: int = Field(..., alias="maxPlayers")
    host_name: str = Field(..., alias="hostName")
    created_at: datetime = Field(..., alias="createdAt")

    class Config:
        populate_by_name = True

    @classmethod
    def from_record(cls, record: GameRecord) -> "PublicGameSummary":
        is_open = record.status == GameStatus.WAITING and record.current_players < record.max_players
        return cls(
            id=record.game_id,
            name=record.game_name,
            status="Open" if is_open else "Full",
            current_players=record.current_players,
            max_players=record.max_players,
            host_name=record.host_name,
            created_at=record.created_at,
        )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def summarize_public_games(records: List[GameRecord]) -> List[dict]:
    return [PublicGameSummary.from_record(r).to_wire() for r in records]
