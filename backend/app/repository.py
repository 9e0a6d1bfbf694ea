"""
=============================================================================
TRUEQUE - Repositorio de Partidas (Almacén Persistente)
=============================================================================
CRUD de registros de sesión y los tres barridos de limpieza por TTL.

Contrato de errores:
- Lecturas fallidas retornan None (o lista vacía en listados)
- Escrituras fallidas retornan None / False
- Nunca se propaga una excepción de base de datos al coordinador
=============================================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import GameRecord, GameStatus, Visibility
from .config import GameConfig

logger = logging.getLogger(__name__)

# Fallos del driver que no llegan envueltos como SQLAlchemyError (conexión rechazada)
STORE_ERRORS = (SQLAlchemyError, OSError)


@dataclass
class CleanupReport:
    """Resultado de un barrido completo de limpieza."""
    stale_removed: List[str] = field(default_factory=list)
    abandoned_removed: List[str] = field(default_factory=list)
    finished_removed: List[str] = field(default_factory=list)
    success: bool = True

    @property
    def removed_ids(self) -> Set[str]:
        return set(self.stale_removed) | set(self.abandoned_removed) | set(self.finished_removed)

    @property
    def total_removed(self) -> int:
        return len(self.stale_removed) + len(self.abandoned_removed) + len(self.finished_removed)


class GameRepository:
    """
    Acceso al almacén persistente de sesiones.

    Cada operación abre su propia AsyncSession: el coordinador dispara las
    escrituras en segundo plano y no comparte sesiones entre eventos.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create_game(
        self,
        game_id: str,
        game_name: str,
        is_private: bool,
        players: List[Dict[str, Any]],
        game_state: Dict[str, Any],
        host_player_id: Optional[str]
    ) -> Optional[GameRecord]:
        """Inserta el registro de una sala recién creada."""
        record = GameRecord(
            game_id=game_id,
            game_name=game_name,
            status=GameStatus.WAITING,
            visibility=Visibility.PRIVATE if is_private else Visibility.PUBLIC,
            players=players,
            game_state=game_state,
            host_player_id=host_player_id,
            current_players=len(players),
            max_players=GameConfig.MAX_PLAYERS,
        )
        try:
            async with self.session_factory() as db:
                db.add(record)
                await db.commit()
            logger.info(f"[DB] Game {game_id} created ({len(players)} players)")
            return record
        except STORE_ERRORS as e:
            logger.error(f"[DB] Error creating game {game_id}: {e}")
            return None

    async def get_game(self, game_id: str) -> Optional[GameRecord]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(GameRecord).where(GameRecord.game_id == game_id)
                )
                return result.scalar_one_or_none()
        except STORE_ERRORS as e:
            logger.error(f"[DB] Error fetching game {game_id}: {e}")
            return None

    async def update_game(self, game_id: str, **changes) -> Optional[GameRecord]:
        """Actualiza columnas arbitrarias de un registro existente."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(GameRecord).where(GameRecord.game_id == game_id)
                )
                record = result.scalar_one_or_none()
                if record is None:
                    logger.warning(f"[DB] Game {game_id} not found for update")
                    return None
                for key, value in changes.items():
                    setattr(record, key, value)
                await db.commit()
                return record
        except STORE_ERRORS as e:
            logger.error(f"[DB] Error updating game {game_id}: {e}")
            return None

    async def add_player(self, game_id: str, player: Dict[str, Any]) -> Optional[GameRecord]:
        """Agrega un jugador al snapshot y actualiza el contador."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(GameRecord).where(GameRecord.game_id == game_id)
                )
                record = result.scalar_one_or_none()
                if record is None:
                    return None
                # Reasignar la lista completa para que el ORM detecte el cambio
                players = [*record.players, player]
                record.players = players
                record.current_players = len(players)
                await db.commit()
                return record
        except STORE_ERRORS as e:
            logger.error(f"[DB] Error adding player to game {game_id}: {e}")
            return None

    async def save_checkpoint(
        self,
        game_id: str,
        status: GameStatus,
        players: List[Dict[str, Any]],
        game_state: Dict[str, Any],
        host_player_id: Optional[str]
    ) -> Optional[GameRecord]:
        """Escribe estado + snapshots: punto de reconstrucción tras reinicio."""
        return await self.update_game(
            game_id,
            status=status,
            players=players,
            game_state=game_state,
            host_player_id=host_player_id,
            current_players=len(players),
        )

    async def delete_game(self, game_id: str) -> bool:
        try:
            async with self.session_factory() as db:
                await db.execute(delete(GameRecord).where(GameRecord.game_id == game_id))
                await db.commit()
            return True
        except STORE_ERRORS as e:
            logger.error(f"[DB] Error deleting game {game_id}: {e}")
            return False

    # =========================================================================
    # CONSULTAS
    # =========================================================================

    async def list_public_games(self) -> List[GameRecord]:
        """Salas públicas en espera con cupo disponible, más recientes primero."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(GameRecord)
                    .where(
                        GameRecord.visibility == Visibility.PUBLIC,
                        GameRecord.status == GameStatus.WAITING,
                        GameRecord.current_players < GameRecord.max_players,
                    )
                    .order_by(GameRecord.created_at.desc())
                )
                return list(result.scalars().all())
        except STORE_ERRORS as e:
            logger.error(f"[DB] Error fetching public games: {e}")
            return []

    async def existing_game_ids(self, game_ids: Iterable[str]) -> Optional[Set[str]]:
        """
        Subconjunto de game_ids que aún tienen registro.
        Retorna None si la consulta falla (el llamador no debe asumir borrado).
        """
        ids = list(game_ids)
        if not ids:
            return set()
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(GameRecord.game_id).where(GameRecord.game_id.in_(ids))
                )
                return set(result.scalars().all())
        except STORE_ERRORS as e:
            logger.error(f"[DB] Error checking game ids: {e}")
            return None

    # =========================================================================
    # LIMPIEZA POR TTL
    # =========================================================================

    async def _delete_matching(self, label: str, *conditions) -> Optional[List[str]]:
        """Selecciona y elimina los registros que cumplen el predicado."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(GameRecord.game_id).where(*conditions))
                doomed = list(result.scalars().all())
                if doomed:
                    await db.execute(
                        delete(GameRecord).where(GameRecord.game_id.in_(doomed))
                    )
                    await db.commit()
            if doomed:
                logger.info(f"[CLEANUP] Removed {len(doomed)} {label} games: {doomed}")
            else:
                logger.debug(f"[CLEANUP] No {label} games found")
            return doomed
        except STORE_ERRORS as e:
            logger.error(f"[CLEANUP] Error removing {label} games: {e}")
            return None

    async def cleanup_stale_open_games(
        self,
        minutes_old: float = GameConfig.STALE_OPEN_MINUTES,
        now: datetime = None
    ) -> Optional[List[str]]:
        """Salas públicas en espera sin actualizaciones recientes."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=minutes_old)
        return await self._delete_matching(
            "stale open",
            GameRecord.status == GameStatus.WAITING,
            GameRecord.visibility == Visibility.PUBLIC,
            GameRecord.updated_at < cutoff,
        )

    async def cleanup_abandoned_games(
        self,
        hours_old: float = GameConfig.ABANDONED_HOURS,
        now: datetime = None
    ) -> Optional[List[str]]:
        """Salas en espera donde nadie se unió además del creador."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=hours_old)
        return await self._delete_matching(
            "abandoned",
            GameRecord.status == GameStatus.WAITING,
            GameRecord.current_players == 1,
            GameRecord.created_at < cutoff,
        )

    async def cleanup_finished_games(
        self,
        hours_old: float = GameConfig.FINISHED_HOURS,
        now: datetime = None
    ) -> Optional[List[str]]:
        """Partidas terminadas hace más del umbral."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=hours_old)
        return await self._delete_matching(
            "finished",
            GameRecord.status == GameStatus.FINISHED,
            GameRecord.updated_at < cutoff,
        )

    async def perform_full_cleanup(self, now: datetime = None) -> CleanupReport:
        """Ejecuta los tres barridos en secuencia."""
        logger.info("[CLEANUP] Starting full database cleanup")
        stale = await self.cleanup_stale_open_games(now=now)
        abandoned = await self.cleanup_abandoned_games(now=now)
        finished = await self.cleanup_finished_games(now=now)

        report = CleanupReport(
            stale_removed=stale or [],
            abandoned_removed=abandoned or [],
            finished_removed=finished or [],
            success=None not in (stale, abandoned, finished),
        )
        logger.info(
            f"[CLEANUP] Completed: stale={len(report.stale_removed)} "
            f"abandoned={len(report.abandoned_removed)} "
            f"finished={len(report.finished_removed)}"
        )
        return report
