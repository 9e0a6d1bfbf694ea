"""Shared fixtures: recording Socket.IO double, SQLite-backed repository, coordinator."""

import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, List, Optional

import pytest

from backend.app.coordinator import GameCoordinator
from backend.app.market import MarketSimulator
from backend.app.repository import GameRepository
from backend.database import build_engine, build_session_factory, init_db


@dataclass
class Emission:
    event: str
    data: Any
    room: Optional[str]


class RecordingServer:
    """Stands in for socketio.AsyncServer: records emits and room membership."""

    def __init__(self):
        self.emitted: List[Emission] = []
        self.rooms = defaultdict(set)

    async def emit(self, event, data=None, to=None, room=None, skip_sid=None, namespace=None, **kwargs):
        self.emitted.append(Emission(event, data, to or room))

    async def enter_room(self, sid, room, namespace=None):
        self.rooms[room].add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms[room].discard(sid)

    def events(self, event: str = None, room: str = None) -> List[Emission]:
        return [
            e for e in self.emitted
            if (event is None or e.event == event) and (room is None or e.room == room)
        ]

    def names(self, room: str = None) -> List[str]:
        return [e.event for e in self.events(room=room)]

    def last(self, event: str, room: str = None) -> Optional[Emission]:
        matches = self.events(event, room)
        return matches[-1] if matches else None

    def clear(self):
        self.emitted.clear()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'trueque.db'}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(engine):
    return GameRepository(build_session_factory(engine))


@pytest.fixture
async def broken_repository(tmp_path):
    """Repository whose database file can never be opened."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nope.db'}", echo=False)
    yield GameRepository(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def server():
    return RecordingServer()


@pytest.fixture
async def coordinator(server, repository):
    coordinator = GameCoordinator(
        server,
        repository,
        market=MarketSimulator(random.Random(7)),
        tick_interval=3600,
        inactivity_timeout=3600,
        market_interval=3600,
        create_sync_delay=0,
        join_sync_delay=0,
    )
    yield coordinator
    await coordinator.shutdown()


@pytest.fixture
def open_game(coordinator):
    """Creates GAME1 hosted by the first name; the rest join in order."""

    async def _open(*names: str, game_id: str = "GAME1", is_private: bool = False):
        names = names or ("Alice", "Bob")
        await coordinator.handle_create_game("sid-0", {
            "gameName": "Test Market",
            "gameId": game_id,
            "playerName": names[0],
            "isPrivate": is_private,
            "walletAddress": "wallet-0",
        })
        for index, name in enumerate(names[1:], start=1):
            await coordinator.handle_join_game(f"sid-{index}", {
                "gameId": game_id,
                "playerName": name,
                "walletAddress": f"wallet-{index}",
            })
        await coordinator.drain()
        return coordinator.sessions.get(game_id)

    return _open
