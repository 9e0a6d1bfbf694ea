"""
=============================================================================
TRUEQUE - Coordinador de Sesiones
=============================================================================
Controlador del ciclo de vida: crear, unirse, iniciar, salir, desconectar
y cerrar. Orquesta el temporizador de rondas, el resolvedor de acciones,
la política de host y el simulador de mercado.

Modelo de ejecución:
- Un único event loop: los eventos, ticks y callbacks nunca se intercalan
  a mitad de una mutación, por lo que no se usan locks
- La memoria es autoritativa; las escrituras al almacén se lanzan como
  tareas en segundo plano (rastreadas, ver drain())
- Cada sesión tiene una tarea de rondas y un handle de inactividad
=============================================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, Set

from pydantic import ValidationError

from ..models import GameStatus, Visibility
from .actions import ActionResolver
from .config import GameConfig
from .game_state import GameSession, Player, generate_game_id, generate_player_id
from .host_policy import HostPolicy
from .market import MarketSimulator
from .registries import ConnectionRegistry, SessionStore, TimerRegistry
from .repository import GameRepository
from .round_timer import RoundTimer, TickEvent
from .schemas import (
    CreateGamePayload,
    JoinGamePayload,
    PlayerActionPayload,
    UpdateMarketPricesPayload,
    summarize_public_games,
)

logger = logging.getLogger(__name__)


# Motivos de cierre visibles para el cliente
ALL_EXITED_REASON = "All players exited"
INACTIVITY_REASON = "Game closed due to 20 minutes of inactivity"


class GameCoordinator:
    """
    Dueño de todas las sesiones vivas.

    `sio` es el servidor Socket.IO (o cualquier objeto con la misma interfaz:
    emit, enter_room, leave_room). El repositorio se usa solo a través de
    métodos que nunca lanzan excepciones de base de datos.
    """

    def __init__(
        self,
        sio,
        repository: GameRepository,
        sessions: SessionStore = None,
        connections: ConnectionRegistry = None,
        timers: TimerRegistry = None,
        market: MarketSimulator = None,
        host_policy: HostPolicy = None,
        tick_interval: float = GameConfig.TICK_INTERVAL,
        inactivity_timeout: float = GameConfig.INACTIVITY_TIMEOUT,
        market_interval: float = GameConfig.MARKET_FLUCTUATION_INTERVAL,
        create_sync_delay: float = GameConfig.CREATE_SYNC_DELAY,
        join_sync_delay: float = GameConfig.JOIN_SYNC_DELAY
    ):
        self.sio = sio
        self.repository = repository
        self.sessions = sessions or SessionStore()
        self.connections = connections or ConnectionRegistry()
        self.timers = timers or TimerRegistry()
        self.market = market or MarketSimulator()
        self.host_policy = host_policy or HostPolicy()

        self.resolver = ActionResolver(self.market)
        self.round_timer = RoundTimer(self.market)

        self.tick_interval = tick_interval
        self.inactivity_timeout = inactivity_timeout
        self.market_interval = market_interval
        self.create_sync_delay = create_sync_delay
        self.join_sync_delay = join_sync_delay

        self._background: Set[asyncio.Task] = set()
        self._last_write: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # TAREAS EN SEGUNDO PLANO
    # =========================================================================

    def _spawn(self, coro: Awaitable, label: str) -> asyncio.Task:
        """Lanza una corrutina sin esperarla y la rastrea hasta que termine."""
        task = asyncio.get_running_loop().create_task(self._guarded(coro, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _guarded(coro: Awaitable, label: str):
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[GAME] Background task failed: {label}")

    async def drain(self):
        """Espera a que terminen todas las escrituras y emisiones pendientes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _write(self, game_id: str, coro: Awaitable, label: str):
        """Escritura en segundo plano, ordenada tras la anterior de la misma sesión."""
        task = self._spawn(self._after(self._last_write.get(game_id), coro), label)
        self._last_write[game_id] = task
        task.add_done_callback(lambda t: self._forget_write(game_id, t))

    def _forget_write(self, game_id: str, task: asyncio.Task):
        if self._last_write.get(game_id) is task:
            del self._last_write[game_id]

    @staticmethod
    async def _after(previous: Optional[asyncio.Task], coro: Awaitable):
        try:
            if previous is not None:
                await asyncio.wait([previous])
        except asyncio.CancelledError:
            coro.close()
            raise
        await coro

    async def _sync_state_later(self, delay: float, game_id: str, sid: str):
        await asyncio.sleep(delay)
        session = self.sessions.get(game_id)
        if session is not None:
            await self._reply(sid, "game-state", session.to_dict())

    # =========================================================================
    # EMISIÓN
    # =========================================================================

    async def _reply(self, sid: str, event: str, data: Any = None):
        await self.sio.emit(event, data, room=sid)

    async def _error(self, sid: str, message: str):
        await self._reply(sid, "error", {"message": message})

    async def _broadcast(self, game_id: str, event: str, data: Any = None):
        await self.sio.emit(event, data, room=game_id)

    async def broadcast_state(self, session: GameSession):
        await self._broadcast(session.game_id, "game-state", session.to_dict())

    # =========================================================================
    # PERSISTENCIA
    # =========================================================================

    def _persist_checkpoint(self, session: GameSession):
        self._write(
            session.game_id,
            self.repository.save_checkpoint(
                session.game_id,
                status=session.status,
                players=session.players_snapshot(),
                game_state=session.to_dict(),
                host_player_id=session.host,
            ),
            f"checkpoint {session.game_id} ({session.status.value})",
        )

    def _persist_roster(self, session: GameSession):
        players = session.players_snapshot()
        self._write(
            session.game_id,
            self.repository.update_game(
                session.game_id,
                players=players,
                current_players=len(players),
                host_player_id=session.host,
            ),
            f"roster {session.game_id}",
        )

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def get_session(self, game_id: Optional[str]) -> Optional[GameSession]:
        """
        Memoria primero; si no está, reconstruye desde el último checkpoint.
        La sesión reconstruida no tiene temporizador de rondas: si estaba en
        juego queda acotada por el timer de inactividad, y si estaba cerrada
        se retorna sin instalarla en memoria.
        """
        if not game_id:
            return None
        session = self.sessions.get(game_id)
        if session is not None:
            return session

        record = await self.repository.get_game(game_id)
        if record is None:
            return None

        # Otro evento pudo instalarla mientras se consultaba el almacén
        session = self.sessions.get(game_id)
        if session is not None:
            return session

        session = GameSession.from_snapshot(
            game_id=record.game_id,
            name=record.game_name,
            visibility=record.visibility,
            status=record.status,
            players=record.players,
            game_state=record.game_state,
            host=record.host_player_id,
            created_at=record.created_at,
        )
        if session.status == GameStatus.CLOSED:
            return session

        self.sessions.add(session)
        if session.status == GameStatus.PLAYING:
            self.reset_inactivity(game_id)
        logger.info(
            f"[GAME] Reconstructed game {game_id} from store "
            f"(status={session.status.value}, players={session.current_players})"
        )
        return session

    # =========================================================================
    # EVENTOS DE CLIENTE
    # =========================================================================

    async def handle_get_public_games(self, sid: str):
        records = await self.repository.list_public_games()
        await self._reply(sid, "public-games-list", summarize_public_games(records))

    async def handle_create_game(self, sid: str, data: Dict[str, Any]):
        try:
            payload = CreateGamePayload.model_validate(data or {})
        except ValidationError as e:
            logger.warning(f"[WS] Invalid create-game payload from {sid}: {e.errors()}")
            await self._error(sid, "Failed to create game")
            return

        game_id = payload.game_id or generate_game_id()
        if game_id in self.sessions:
            await self._error(sid, "Game ID already in use")
            return

        player_id = payload.wallet_address or generate_player_id()
        player = Player(
            id=player_id,
            name=payload.player_name,
            socket_id=sid,
            wallet_address=payload.wallet_address,
        )
        session = GameSession(
            game_id=game_id,
            name=payload.game_name,
            visibility=Visibility.PRIVATE if payload.is_private else Visibility.PUBLIC,
            players=[player],
            host=player_id,
        )

        self.sessions.add(session)
        self.connections.bind(sid, game_id, player_id, player.name)
        await self.sio.enter_room(sid, game_id)

        self._write(
            game_id,
            self.repository.create_game(
                game_id=game_id,
                game_name=session.name,
                is_private=session.is_private,
                players=session.players_snapshot(),
                game_state=session.to_dict(),
                host_player_id=player_id,
            ),
            f"create {game_id}",
        )

        await self._reply(sid, "game-created", {"gameId": game_id, "playerId": player_id})
        self._spawn(
            self._sync_state_later(self.create_sync_delay, game_id, sid),
            f"initial state {game_id}",
        )
        logger.info(f"[GAME] Game {game_id} created by {player.name} ({player_id})")

    async def handle_join_game(self, sid: str, data: Dict[str, Any]):
        try:
            payload = JoinGamePayload.model_validate(data or {})
        except ValidationError as e:
            logger.warning(f"[WS] Invalid join-game payload from {sid}: {e.errors()}")
            await self._error(sid, "Failed to join game")
            return

        session = await self.get_session(payload.game_id)
        if session is None:
            await self._error(sid, "Game not found")
            return

        player_id = payload.wallet_address or generate_player_id()
        existing = session.find_player(player_id)

        if existing is None:
            if session.is_full():
                await self._error(sid, "Game is full")
                return
            if session.status != GameStatus.WAITING:
                await self._error(sid, "Game already in progress")
                return
            player = Player(
                id=player_id,
                name=payload.player_name,
                socket_id=sid,
                wallet_address=payload.wallet_address,
            )
            session.players.append(player)
            self._write(
                session.game_id,
                self.repository.add_player(session.game_id, player.to_dict()),
                f"add player {player_id} to {session.game_id}",
            )
        else:
            # Misma wallet: se reasocia el asiento existente
            if session.status != GameStatus.WAITING:
                await self._error(sid, "Game already in progress")
                return
            player = existing
            previous_sid = player.socket_id
            if previous_sid and previous_sid != sid:
                # La conexión anterior deja de representar al asiento
                self.connections.unbind(previous_sid)
                await self.sio.leave_room(previous_sid, session.game_id)
            player.socket_id = sid
            player.connected = True
            player.name = payload.player_name

        # Quien vuelve ya no cuenta como salido
        session.exited_players.discard(player.id)
        session.touch()
        self.connections.bind(sid, session.game_id, player.id, player.name)
        await self.sio.enter_room(sid, session.game_id)

        await self._reply(sid, "game-joined", {"gameId": session.game_id, "playerId": player.id})
        self._spawn(
            self._announce_join(session.game_id, player.name),
            f"announce join {session.game_id}",
        )
        logger.info(f"[GAME] {player.name} joined game {session.game_id}")

    async def _announce_join(self, game_id: str, player_name: str):
        await asyncio.sleep(self.join_sync_delay)
        session = self.sessions.get(game_id)
        if session is None:
            return
        await self.broadcast_state(session)
        await self._broadcast(game_id, "player-joined", {"playerName": player_name})

    async def handle_get_game_state(self, sid: str, data: Optional[Dict[str, Any]]):
        game_id = (data or {}).get("gameId") if isinstance(data, dict) else None
        if not game_id:
            await self._error(sid, "No game ID provided")
            return
        session = await self.get_session(str(game_id))
        if session is None:
            await self._error(sid, "Game not found")
            return
        await self._reply(sid, "game-state", session.to_dict())

    async def handle_start_game(self, sid: str):
        binding = self.connections.get(sid)
        if binding is None:
            return
        session = self.sessions.get(binding.game_id)

        if session is None or not self.host_policy.is_host(session, binding.player_id):
            await self._error(sid, "Only the host can start the game")
            return
        if session.status != GameStatus.WAITING:
            await self._error(sid, "Game already in progress")
            return
        if session.current_players < GameConfig.MIN_PLAYERS_TO_START:
            await self._error(sid, "Need at least 2 players to start")
            return

        session.status = GameStatus.PLAYING
        self.round_timer.start(session)
        session.touch()
        self._persist_checkpoint(session)

        await self._broadcast(session.game_id, "game-started")
        await self.broadcast_state(session)

        self._start_round_task(session.game_id)
        self.reset_inactivity(session.game_id)
        logger.info(f"[GAME] Game {session.game_id} started with {session.current_players} players")

    async def handle_exit_game(self, sid: str):
        binding = self.connections.get(sid)
        if binding is None:
            return
        game_id = binding.game_id
        session = self.sessions.get(game_id)
        if session is None:
            self.connections.unbind(sid)
            await self.sio.leave_room(sid, game_id)
            return

        logger.info(f"[GAME] {binding.player_name} is exiting game {game_id}")
        session.exited_players.add(binding.player_id)
        session.touch()
        if session.status == GameStatus.PLAYING:
            self.reset_inactivity(game_id)

        all_exited = all(
            p.id in session.exited_players or not p.connected
            for p in session.players
        )
        if all_exited:
            await self.close_game(game_id, ALL_EXITED_REASON)
            return

        session.remove_player(binding.player_id)
        self.host_policy.on_exit(session, binding.player_id)
        self._persist_roster(session)

        self.connections.unbind(sid)
        await self.sio.leave_room(sid, game_id)

        await self._broadcast(game_id, "player-disconnected", {
            "playerName": binding.player_name,
            "reason": "exited",
        })
        await self.broadcast_state(session)

    async def handle_disconnect(self, sid: str):
        binding = self.connections.unbind(sid)
        if binding is None:
            return
        session = self.sessions.get(binding.game_id)
        if session is None:
            return

        player = session.find_player(binding.player_id)
        if player is not None and player.socket_id not in (None, sid):
            # El asiento ya fue reasociado a otra conexión
            return
        if player is not None:
            player.connected = False
        session.touch()
        self.host_policy.on_disconnect(session, binding.player_id)

        await self.broadcast_state(session)
        await self._broadcast(session.game_id, "player-disconnected", {"playerName": binding.player_name})
        logger.info(f"[WS] {binding.player_name} disconnected from game {session.game_id}")

    async def handle_update_market_prices(self, sid: str, data: Dict[str, Any]):
        binding = self.connections.get(sid)
        if binding is None:
            return
        session = self.sessions.get(binding.game_id)
        if session is None or session.status != GameStatus.PLAYING:
            return
        if not self.host_policy.is_host(session, binding.player_id):
            logger.info(f"[MARKET] Non-host {binding.player_name} tried to update prices in {session.game_id}")
            return

        try:
            payload = UpdateMarketPricesPayload.model_validate(data or {})
        except ValidationError as e:
            logger.warning(f"[MARKET] Ignoring invalid price update from {sid}: {e.errors()}")
            return

        prices = self.market.apply_price_update(session, payload.market_prices.model_dump())
        await self.broadcast_state(session)
        await self._broadcast(session.game_id, "market-prices-updated", {"marketPrices": prices})

    async def handle_player_action(self, sid: str, data: Dict[str, Any]):
        binding = self.connections.get(sid)
        if binding is None:
            return
        session = self.sessions.get(binding.game_id)
        if session is None or session.status != GameStatus.PLAYING:
            return

        self.reset_inactivity(session.game_id)

        try:
            payload = PlayerActionPayload.model_validate(data or {})
        except ValidationError as e:
            logger.warning(f"[GAME] Ignoring invalid action from {sid}: {e.errors()}")
            return

        self.resolver.resolve(
            session,
            binding.player_id,
            payload.action,
            payload.resource,
            payload.amount,
            payload.target_player,
        )
        await self.broadcast_state(session)

    # =========================================================================
    # TEMPORIZADOR DE RONDAS
    # =========================================================================

    def _start_round_task(self, game_id: str):
        task = asyncio.get_running_loop().create_task(self._run_round_timer(game_id))
        self.timers.set_round_task(game_id, task)

    async def _run_round_timer(self, game_id: str):
        try:
            while True:
                await asyncio.sleep(self.tick_interval)
                session = self.sessions.get(game_id)
                if session is None:
                    return
                try:
                    if not await self.handle_round_tick(session):
                        return
                except Exception:
                    logger.exception(f"[ROUND] Tick failed for game {game_id}")
        finally:
            self.timers.cancel_round_task(game_id)

    async def handle_round_tick(self, session: GameSession) -> bool:
        """Un segundo de juego. Retorna False cuando el temporizador debe detenerse."""
        outcome = self.round_timer.tick(session)

        if outcome.has(TickEvent.ROUND_ENDED):
            logger.info(f"[ROUND] Game {session.game_id}: round {outcome.completed_round} ended")
            await self._broadcast(session.game_id, "round-ended", {
                "round": outcome.completed_round,
                "timeRemaining": GameConfig.ROUND_DELAY,
            })

        if outcome.has(TickEvent.ROUND_STARTED):
            logger.info(f"[ROUND] Game {session.game_id}: round {session.round.current} started")

        if outcome.has(TickEvent.GAME_FINISHED):
            await self._on_game_finished(session)
            return False

        if not outcome.active:
            return False

        await self.broadcast_state(session)
        return True

    async def _on_game_finished(self, session: GameSession):
        self.timers.cancel(session.game_id)
        self._persist_checkpoint(session)
        winner = session.winner or {}
        logger.info(
            f"[GAME] Game {session.game_id} finished, winner "
            f"{winner.get('name')} ({winner.get('finalScore')})"
        )
        await self._broadcast(session.game_id, "game-finished", {
            "winner": session.winner,
            "finalScores": session.final_scores,
        })
        await self.broadcast_state(session)

    # =========================================================================
    # INACTIVIDAD Y CIERRE
    # =========================================================================

    def reset_inactivity(self, game_id: str):
        handle = asyncio.get_running_loop().call_later(
            self.inactivity_timeout, self._on_inactivity, game_id
        )
        self.timers.set_inactivity(game_id, handle)

    def _on_inactivity(self, game_id: str):
        self.timers.cancel_inactivity(game_id)
        logger.info(f"[GAME] Game {game_id} inactive for {self.inactivity_timeout}s, closing")
        self._spawn(self.close_game(game_id, INACTIVITY_REASON), f"inactivity close {game_id}")

    async def close_game(self, game_id: str, reason: str = "Game closed"):
        """Cancela timers, notifica a la sala, libera conexiones y persiste 'closed'."""
        self.timers.cancel(game_id)
        session = self.sessions.remove(game_id)
        if session is None:
            logger.debug(f"[GAME] close_game({game_id}): already closed")
            return

        logger.info(f"[GAME] Closing game {game_id}: {reason}")
        session.status = GameStatus.CLOSED
        session.timer_active = False
        session.touch()

        await self._broadcast(game_id, "game-closed", {"reason": reason})
        for sid in self.connections.unbind_game(game_id):
            await self.sio.leave_room(sid, game_id)

        self._persist_checkpoint(session)

    async def discard_session(self, game_id: str) -> bool:
        """Descarte silencioso (reconciliación de limpieza): sin eventos ni escrituras."""
        self.timers.cancel(game_id)
        session = self.sessions.remove(game_id)
        for sid in self.connections.unbind_game(game_id):
            await self.sio.leave_room(sid, game_id)
        if session is not None:
            logger.info(f"[CLEANUP] Dropped in-memory state for deleted game {game_id}")
        return session is not None

    # =========================================================================
    # MERCADO AMBIENTAL
    # =========================================================================

    async def run_market_cycle(self):
        """Fluctuación de indicadores en todas las sesiones en juego."""
        for session in self.sessions.playing():
            self.market.fluctuate(session)
            session.touch()
            await self.broadcast_state(session)

    async def run_market_loop(self):
        while True:
            await asyncio.sleep(self.market_interval)
            try:
                await self.run_market_cycle()
            except Exception:
                logger.exception("[MARKET] Fluctuation cycle failed")

    # =========================================================================
    # ESTADO Y APAGADO
    # =========================================================================

    def stats(self) -> Dict[str, int]:
        return {
            "active_games": len(self.sessions),
            "playing_games": len(self.sessions.playing()),
            "connected_players": len(self.connections),
        }

    async def shutdown(self):
        cancelled = self.timers.cancel_all()
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        await self.drain()
        logger.info("[GAME] Coordinator stopped")
