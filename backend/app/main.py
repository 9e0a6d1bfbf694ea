"""
=============================================================================
TRUEQUE - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Servidor coordinador de sesiones multijugador de comercio de recursos.

Integra:
- FastAPI para endpoints HTTP de estado y listado
- Socket.IO para comunicación en tiempo real (WebSockets)
- Tareas de fondo: fluctuación de mercado y limpieza periódica
=============================================================================
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..database import init_db
from .config import configure_logging, get_settings
from .eviction import EvictionScheduler
from .schemas import summarize_public_games
from .websocket_handler import coordinator, create_socket_app, engine, repository

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# =============================================================================
# LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    # Startup
    configure_logging()
    logger.info("[TRUEQUE] Starting server...")

    try:
        await init_db(engine)
        logger.info("[DB] Tables ready")
    except Exception:
        logger.exception("[DB] Could not initialize tables, continuing in memory")

    eviction = EvictionScheduler(coordinator, repository)
    await eviction.run_startup_sweep()

    background = [
        asyncio.create_task(coordinator.run_market_loop()),
        asyncio.create_task(eviction.run_forever()),
    ]
    logger.info("[TRUEQUE] Market and cleanup loops running")
    yield

    # Shutdown
    logger.info("[TRUEQUE] Shutting down...")
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    await coordinator.shutdown()
    await engine.dispose()


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

app = FastAPI(
    title="Trueque API",
    description="""
    ## Coordinador de sesiones de comercio multijugador

    ### Características:
    - **Sesiones en memoria**: estado autoritativo por partida
    - **Rondas temporizadas**: 20 rondas de 60 s con pausa de 10 s
    - **Mercado compartido**: compra, venta, quema y sabotaje
    - **WebSockets**: eventos en tiempo real vía Socket.IO

    ### Estados de Partida:
    waiting → playing → finished | closed
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ENDPOINTS - HEALTH & STATUS
# =============================================================================

@app.get("/health")
async def health_check():
    """Endpoint de health check para Docker y load balancers."""
    return {
        "status": "healthy",
        "service": "trueque-backend",
        "version": VERSION,
        "timestamp": time.time()
    }


@app.get("/")
async def root():
    return {
        "message": "Trueque game server",
        "docs": "/docs",
        "health": "/health",
        "websocket": "/socket.io",
        "version": VERSION
    }


@app.get("/api/v1/status")
async def server_status():
    """Estado detallado del coordinador."""
    return {
        "server": "online",
        **coordinator.stats(),
        "timestamp": time.time()
    }


@app.get("/api/v1/games")
async def list_public_games():
    """Salas públicas en espera (misma forma que public-games-list)."""
    records = await repository.list_public_games()
    return {"games": summarize_public_games(records)}


# =============================================================================
# MONTAR SOCKET.IO
# =============================================================================

# Socket.IO envuelve a FastAPI para que los upgrades de WebSocket funcionen
combined_app = create_socket_app(app)
