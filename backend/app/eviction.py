"""
=============================================================================
TRUEQUE - Programador de Limpieza (Eviction)
=============================================================================
Barridos periódicos sobre el almacén persistente y reconciliación de la
memoria del coordinador:

- Al arrancar: solo partidas terminadas, con umbral corto (0.1 h)
- Cada hora: stale-open + abandoned + finished, luego reconciliación
=============================================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from .config import GameConfig
from .coordinator import GameCoordinator
from .repository import CleanupReport, GameRepository

logger = logging.getLogger(__name__)


class EvictionScheduler:
    """Aplica las políticas de TTL y descarta las sesiones borradas del almacén."""

    def __init__(
        self,
        coordinator: GameCoordinator,
        repository: GameRepository,
        interval: float = GameConfig.EVICTION_INTERVAL
    ):
        self.coordinator = coordinator
        self.repository = repository
        self.interval = interval

    async def run_startup_sweep(self) -> Optional[List[str]]:
        removed = await self.repository.cleanup_finished_games(
            hours_old=GameConfig.STARTUP_FINISHED_HOURS
        )
        if removed is None:
            logger.warning("[CLEANUP] Startup sweep failed, continuing")
        else:
            logger.info(f"[CLEANUP] Startup sweep removed {len(removed)} finished games")
        return removed

    async def run_sweep(self, now: datetime = None) -> CleanupReport:
        report = await self.repository.perform_full_cleanup(now=now)
        dropped = await self.reconcile(report)
        if dropped:
            logger.info(f"[CLEANUP] Reconciled memory, dropped {dropped}")
        return report

    async def reconcile(self, report: CleanupReport) -> List[str]:
        """
        Descarta de memoria las sesiones cuyo registro ya no existe.
        Si la consulta de existencia falla no se descarta nada.
        """
        live_ids = self.coordinator.sessions.ids()
        if not live_ids:
            return []

        existing = await self.repository.existing_game_ids(live_ids)
        if existing is None:
            logger.warning("[CLEANUP] Could not verify live games, skipping reconciliation")
            doomed = [gid for gid in live_ids if gid in report.removed_ids]
        else:
            doomed = [gid for gid in live_ids if gid not in existing or gid in report.removed_ids]

        for game_id in doomed:
            await self.coordinator.discard_session(game_id)
        return doomed

    async def run_forever(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_sweep()
            except Exception:
                logger.exception("[CLEANUP] Scheduled sweep failed")
