"""
=============================================================================
TRUEQUE - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Copia persistente y eventualmente consistente de las sesiones de juego.
La fuente de verdad es la memoria del coordinador; aquí solo se escriben
los hitos relevantes (creación, ingreso de jugadores, cambios de estado).

Principios de Diseño:
- Optimismo: un fallo de escritura nunca bloquea la partida
- Checkpoints: el snapshot guardado es el punto de reconstrucción tras reinicio
- Limpieza: los registros viejos se eliminan con tres predicados de TTL
=============================================================================
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class GameStatus(str, PyEnum):
    """Ciclo de vida de una sesión."""
    WAITING = "waiting"      # Sala abierta, aceptando jugadores
    PLAYING = "playing"      # Rondas en curso
    FINISHED = "finished"    # Puntuación final calculada
    CLOSED = "closed"        # Cerrada (salida total o inactividad)


class Visibility(str, PyEnum):
    """Visibilidad de la sala en el listado público."""
    PUBLIC = "public"
    PRIVATE = "private"


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB en PostgreSQL, JSON genérico en otros motores (tests con SQLite)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: GAMES (Snapshot persistente de sesiones)
# =============================================================================

class GameRecord(Base):
    """
    Registro persistente de una sesión de juego.

    El game_id corto es la identidad externa; el UUID es solo clave interna.
    players y game_state son snapshots JSON del último checkpoint.
    """
    __tablename__ = "games"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identidad externa
    game_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    game_name: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[GameStatus] = mapped_column(
        Enum(GameStatus, native_enum=False, length=20, values_callable=_enum_values),
        default=GameStatus.WAITING,
        nullable=False
    )
    visibility: Mapped[Visibility] = mapped_column(
        Enum(Visibility, native_enum=False, length=20, values_callable=_enum_values),
        default=Visibility.PUBLIC,
        nullable=False
    )

    # ==========================================================================
    # SNAPSHOTS
    # ==========================================================================
    players: Mapped[List[Dict[str, Any]]] = mapped_column(JSONDocument, default=list, nullable=False)
    game_state: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, default=dict, nullable=False)
    host_player_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    current_players: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_players: Mapped[int] = mapped_column(Integer, default=4, nullable=False)

    # Timestamps (los predicados de limpieza dependen de ambos)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    __table_args__ = (
        Index("idx_games_status", "status"),
        Index("idx_games_visibility", "visibility"),
        Index("idx_games_created_at", "created_at"),
        CheckConstraint("current_players >= 0", name="check_current_players_positive"),
    )

    @property
    def host_name(self) -> str:
        """Nombre del primer jugador registrado (el creador de la sala)."""
        if self.players:
            return self.players[0].get("name") or "Unknown"
        return "Unknown"

    @property
    def is_private(self) -> bool:
        return self.visibility == Visibility.PRIVATE
