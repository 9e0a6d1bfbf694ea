"""
=============================================================================
TRUEQUE - Manejador de WebSockets (Socket.IO)
=============================================================================
Comunicación bidireccional en tiempo real para las sesiones de comercio.
Cada sesión es una sala de Socket.IO cuyo nombre es el gameId.

Los handlers solo traducen eventos: toda la lógica vive en GameCoordinator.
=============================================================================
"""

import logging

import socketio

from ..database import build_engine, build_session_factory
from .config import get_settings
from .coordinator import GameCoordinator
from .repository import GameRepository

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURACIÓN DEL SOCKET
# =============================================================================

class SocketConfig:
    """Configuración del servidor de WebSockets."""

    PING_INTERVAL = 25               # Segundos entre pings del servidor
    PING_TIMEOUT = 20                # Sin respuesta -> desconexión


def _cors_origins():
    origins = get_settings().cors_origins
    return "*" if "*" in origins else origins


# =============================================================================
# SERVIDOR SOCKET.IO Y DEPENDENCIAS
# =============================================================================

sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins=_cors_origins(),
    ping_timeout=SocketConfig.PING_TIMEOUT,
    ping_interval=SocketConfig.PING_INTERVAL
)

engine = build_engine()
repository = GameRepository(build_session_factory(engine))

# Instancia global del coordinador de sesiones
coordinator = GameCoordinator(sio, repository)


# =============================================================================
# HANDLERS DE CONEXIÓN
# =============================================================================

@sio.event
async def connect(sid: str, environ: dict, auth: dict = None):
    logger.info(f"[WS] New connection: {sid}")


@sio.event
async def disconnect(sid: str, reason=None):
    """Marca al jugador como desconectado y aplica el relevo de host."""
    logger.info(f"[WS] Disconnect: {sid} ({reason})")
    try:
        await coordinator.handle_disconnect(sid)
    except Exception:
        logger.exception(f"[WS] Error handling disconnect of {sid}")


# =============================================================================
# HANDLERS DE LOBBY
# =============================================================================

@sio.on('get-public-games')
async def get_public_games(sid: str, data: dict = None):
    try:
        await coordinator.handle_get_public_games(sid)
    except Exception:
        logger.exception("[WS] Error listing public games")
        await sio.emit('public-games-list', [], room=sid)


@sio.on('create-game')
async def create_game(sid: str, data: dict):
    """
    data = {
        'gameName': str,
        'gameId': str,           # opcional, se genera si falta
        'playerName': str,
        'isPrivate': bool,
        'walletAddress': str     # opcional, se usa como playerId
    }
    """
    try:
        await coordinator.handle_create_game(sid, data)
    except Exception:
        logger.exception(f"[WS] Error creating game for {sid}")
        await sio.emit('error', {'message': 'Failed to create game'}, room=sid)


@sio.on('join-game')
async def join_game(sid: str, data: dict):
    """
    data = {
        'gameId': str,
        'playerName': str,
        'walletAddress': str     # opcional
    }
    """
    try:
        await coordinator.handle_join_game(sid, data)
    except Exception:
        logger.exception(f"[WS] Error joining game for {sid}")
        await sio.emit('error', {'message': 'Failed to join game'}, room=sid)


@sio.on('get-game-state')
async def get_game_state(sid: str, data: dict = None):
    try:
        await coordinator.handle_get_game_state(sid, data)
    except Exception:
        logger.exception(f"[WS] Error getting game state for {sid}")
        await sio.emit('error', {'message': 'Failed to get game state'}, room=sid)


# =============================================================================
# HANDLERS DE PARTIDA
# =============================================================================

@sio.on('start-game')
async def start_game(sid: str, data: dict = None):
    try:
        await coordinator.handle_start_game(sid)
    except Exception:
        logger.exception(f"[WS] Error starting game for {sid}")
        await sio.emit('error', {'message': 'Failed to start game'}, room=sid)


@sio.on('exit-game')
async def exit_game(sid: str, data: dict = None):
    try:
        await coordinator.handle_exit_game(sid)
    except Exception:
        logger.exception(f"[WS] Error handling exit of {sid}")


@sio.on('update-market-prices')
async def update_market_prices(sid: str, data: dict = None):
    """
    Solo el host, solo en juego.
    data = {'marketPrices': {'gold_price': int, 'water_price': int, 'oil_price': int}}
    """
    try:
        await coordinator.handle_update_market_prices(sid, data)
    except Exception:
        logger.exception(f"[WS] Error updating market prices for {sid}")


@sio.on('player-action')
async def player_action(sid: str, data: dict = None):
    """
    data = {
        'action': 'Buy' | 'Sell' | 'Burn' | 'Sabotage',
        'resource': 'gold' | 'water' | 'oil',
        'amount': int,
        'targetPlayer': str      # solo Sabotage
    }
    """
    try:
        await coordinator.handle_player_action(sid, data)
    except Exception:
        logger.exception(f"[WS] Error handling action from {sid}")


# =============================================================================
# APLICACIÓN ASGI
# =============================================================================

def create_socket_app(other_asgi_app=None):
    """Crea la aplicación ASGI de Socket.IO envolviendo a FastAPI."""
    return socketio.ASGIApp(sio, other_asgi_app=other_asgi_app)
