"""Tests for the session lifecycle coordinator driven through its event handlers."""

import asyncio

from backend.app.coordinator import ALL_EXITED_REASON, INACTIVITY_REASON
from backend.app.game_state import Counting, Player, RoundDelay
from backend.models import GameStatus


class TestCreate:
    async def test_create_replies_then_syncs_state(self, coordinator, server):
        await coordinator.handle_create_game("sid-0", {
            "gameName": "Room",
            "gameId": "ROOM1",
            "playerName": "Alice",
            "walletAddress": "0xalice",
        })
        await coordinator.drain()

        assert server.names(room="sid-0") == ["game-created", "game-state"]
        assert server.events("game-created")[0].data == {"gameId": "ROOM1", "playerId": "0xalice"}

        session = coordinator.sessions.get("ROOM1")
        assert session.host == "0xalice"
        assert session.status == GameStatus.WAITING
        assert coordinator.connections.get("sid-0").player_id == "0xalice"
        assert "sid-0" in server.rooms["ROOM1"]

        record = await coordinator.repository.get_game("ROOM1")
        assert record.host_player_id == "0xalice"
        assert record.current_players == 1

    async def test_generated_ids(self, coordinator, server):
        await coordinator.handle_create_game("sid-0", {"playerName": "Alice"})
        created = server.last("game-created").data
        assert created["gameId"]
        assert created["playerId"].startswith("player_")

    async def test_live_id_cannot_be_reused(self, open_game, coordinator, server):
        await open_game("Alice")
        await coordinator.handle_create_game("sid-9", {"gameId": "GAME1", "playerName": "Eve"})
        assert server.last("error", room="sid-9").data == {"message": "Game ID already in use"}

    async def test_malformed_payload(self, coordinator, server):
        await coordinator.handle_create_game("sid-0", {"gameName": "No player"})
        assert server.last("error", room="sid-0").data == {"message": "Failed to create game"}
        assert len(coordinator.sessions) == 0

    async def test_store_failure_does_not_block_creation(self, server, broken_repository):
        from backend.app.coordinator import GameCoordinator

        coordinator = GameCoordinator(server, broken_repository, create_sync_delay=0)
        await coordinator.handle_create_game("sid-0", {"gameId": "X1", "playerName": "Alice"})
        await coordinator.drain()
        assert coordinator.sessions.get("X1") is not None
        assert server.names(room="sid-0") == ["game-created", "game-state"]


class TestJoin:
    async def test_join_broadcasts_state_and_name(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")

        assert [p.name for p in session.players] == ["Alice", "Bob"]
        assert server.last("game-joined", room="sid-1").data == {"gameId": "GAME1", "playerId": "wallet-1"}
        assert server.names(room="GAME1")[-2:] == ["game-state", "player-joined"]
        assert server.last("player-joined").data == {"playerName": "Bob"}

        record = await coordinator.repository.get_game("GAME1")
        assert record.current_players == 2

    async def test_unknown_game(self, coordinator, server):
        await coordinator.handle_join_game("sid-5", {"gameId": "NOPE", "playerName": "Zed"})
        assert server.last("error").data == {"message": "Game not found"}

    async def test_full_game(self, open_game, coordinator, server):
        await open_game("A", "B", "C", "D")
        await coordinator.handle_join_game("sid-9", {"gameId": "GAME1", "playerName": "E"})
        assert server.last("error", room="sid-9").data == {"message": "Game is full"}
        assert coordinator.sessions.get("GAME1").current_players == 4

    async def test_game_in_progress(self, open_game, coordinator, server):
        await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        await coordinator.handle_join_game("sid-9", {"gameId": "GAME1", "playerName": "Late"})
        assert server.last("error", room="sid-9").data == {"message": "Game already in progress"}

    async def test_rejoin_with_same_wallet_reuses_seat(self, open_game, coordinator):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_join_game("sid-7", {
            "gameId": "GAME1", "playerName": "Bobby", "walletAddress": "wallet-1",
        })
        assert session.current_players == 2
        assert session.find_player("wallet-1").socket_id == "sid-7"

    async def test_rejoin_releases_previous_connection(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_join_game("sid-7", {
            "gameId": "GAME1", "playerName": "Bob", "walletAddress": "wallet-1",
        })

        assert coordinator.connections.get("sid-1") is None
        assert "sid-1" not in server.rooms["GAME1"]

        await coordinator.handle_disconnect("sid-1")
        assert session.find_player("wallet-1").connected is True
        assert coordinator.connections.get("sid-7").player_id == "wallet-1"

    async def test_join_reconstructs_from_store(self, open_game, coordinator):
        await open_game("Alice")
        coordinator.sessions.remove("GAME1")

        await coordinator.handle_join_game("sid-3", {"gameId": "GAME1", "playerName": "Carol"})

        session = coordinator.sessions.get("GAME1")
        assert [p.name for p in session.players] == ["Alice", "Carol"]
        assert session.host == "wallet-0"
        assert session.market_prices == {"gold": 100, "water": 50, "oil": 150}
        assert session.timer_active is False


class TestGameState:
    async def test_requires_id(self, coordinator, server):
        await coordinator.handle_get_game_state("sid-0", {})
        assert server.last("error").data == {"message": "No game ID provided"}

    async def test_unknown(self, coordinator, server):
        await coordinator.handle_get_game_state("sid-0", {"gameId": "NOPE"})
        assert server.last("error").data == {"message": "Game not found"}

    async def test_snapshot(self, open_game, coordinator, server):
        await open_game("Alice", "Bob")
        await coordinator.handle_get_game_state("sid-8", {"gameId": "GAME1"})
        state = server.last("game-state", room="sid-8").data
        assert state["gameId"] == "GAME1"
        assert state["currentPlayers"] == 2

    async def test_rebuilt_playing_game_is_bounded_by_inactivity(self, coordinator, repository):
        await repository.create_game("LIVE", "Live", False, [Player(id="p1", name="Ann").to_dict()], {}, "p1")
        await repository.update_game("LIVE", status=GameStatus.PLAYING)

        await coordinator.handle_get_game_state("sid-8", {"gameId": "LIVE"})

        session = coordinator.sessions.get("LIVE")
        assert session.status == GameStatus.PLAYING
        assert session.timer_active is False
        assert coordinator.timers.has_inactivity("LIVE")

    async def test_rebuilt_closed_game_is_not_kept(self, coordinator, repository, server):
        await repository.create_game("DONE", "Done", False, [], {}, None)
        await repository.update_game("DONE", status=GameStatus.CLOSED)

        await coordinator.handle_get_game_state("sid-8", {"gameId": "DONE"})

        assert server.last("game-state", room="sid-8").data["status"] == "closed"
        assert coordinator.sessions.get("DONE") is None
        assert not coordinator.timers.has_inactivity("DONE")


class TestStart:
    async def test_only_host_can_start(self, open_game, coordinator, server):
        await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-1")
        assert server.last("error", room="sid-1").data == {"message": "Only the host can start the game"}

    async def test_needs_two_players(self, open_game, coordinator, server):
        await open_game("Alice")
        await coordinator.handle_start_game("sid-0")
        assert server.last("error", room="sid-0").data == {"message": "Need at least 2 players to start"}

    async def test_start(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        server.clear()

        await coordinator.handle_start_game("sid-0")
        await coordinator.drain()

        assert server.names(room="GAME1") == ["game-started", "game-state"]
        assert session.status == GameStatus.PLAYING
        assert session.timer_active
        assert coordinator.timers.has_round_task("GAME1")
        assert coordinator.timers.has_inactivity("GAME1")
        record = await coordinator.repository.get_game("GAME1")
        assert record.status == GameStatus.PLAYING

    async def test_second_start_is_rejected(self, open_game, coordinator, server):
        await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        await coordinator.handle_start_game("sid-0")
        assert server.last("error", room="sid-0").data == {"message": "Game already in progress"}

    async def test_unbound_connection_is_ignored(self, coordinator, server):
        await coordinator.handle_start_game("stranger")
        assert server.emitted == []


class TestActions:
    async def test_action_updates_and_broadcasts(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        server.clear()

        await coordinator.handle_player_action("sid-1", {"action": "Buy", "resource": "Gold", "amount": 2})

        assert session.find_player("wallet-1").tokens == 800
        assert session.recent_actions == ["Bob bought 2 Gold for 200 tokens"]
        assert server.names(room="GAME1") == ["game-state"]

    async def test_failed_action_still_syncs(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        server.clear()

        await coordinator.handle_player_action("sid-1", {"action": "Sell", "resource": "oil", "amount": 1})

        assert session.recent_actions == []
        assert server.names(room="GAME1") == ["game-state"]

    async def test_actions_ignored_before_start(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        server.clear()
        await coordinator.handle_player_action("sid-1", {"action": "Buy", "resource": "gold", "amount": 1})
        assert session.find_player("wallet-1").tokens == 1000
        assert server.emitted == []

    async def test_malformed_action_is_ignored(self, open_game, coordinator, server):
        await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        server.clear()
        await coordinator.handle_player_action("sid-1", {"action": "Buy"})
        assert server.emitted == []


class TestMarketPrices:
    async def test_host_updates_prices(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        server.clear()

        await coordinator.handle_update_market_prices("sid-0", {"marketPrices": {"gold_price": 140}})

        assert session.market_prices == {"gold": 140, "water": 50, "oil": 150}
        assert server.names(room="GAME1") == ["game-state", "market-prices-updated"]
        assert server.last("market-prices-updated").data == {"marketPrices": session.market_prices}

    async def test_non_host_is_ignored(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        server.clear()
        await coordinator.handle_update_market_prices("sid-1", {"marketPrices": {"gold_price": 1}})
        assert session.market_prices["gold"] == 100
        assert server.emitted == []

    async def test_invalid_prices_are_ignored(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        server.clear()
        await coordinator.handle_update_market_prices("sid-0", {"marketPrices": {"gold_price": -10}})
        assert session.market_prices["gold"] == 100
        assert server.emitted == []


class TestExit:
    async def test_exit_notifies_remaining_players(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob", "Carol")
        server.clear()

        await coordinator.handle_exit_game("sid-1")

        assert [p.name for p in session.players] == ["Alice", "Carol"]
        assert "wallet-1" in session.exited_players
        assert coordinator.connections.get("sid-1") is None
        assert "sid-1" not in server.rooms["GAME1"]
        assert server.last("player-disconnected").data == {"playerName": "Bob", "reason": "exited"}

    async def test_exit_twice_equals_once(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob", "Carol")
        await coordinator.handle_exit_game("sid-1")
        snapshot = session.to_dict()
        emitted = len(server.emitted)

        await coordinator.handle_exit_game("sid-1")

        assert len(server.emitted) == emitted
        snapshot.pop("updatedAt")
        again = session.to_dict()
        again.pop("updatedAt")
        assert again == snapshot

    async def test_host_exit_hands_over(self, open_game, coordinator):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_exit_game("sid-0")
        assert session.host == "wallet-1"

    async def test_last_exit_closes_game(self, open_game, coordinator, server):
        await open_game("Alice", "Bob")
        await coordinator.handle_disconnect("sid-1")
        await coordinator.handle_exit_game("sid-0")
        await coordinator.drain()

        assert coordinator.sessions.get("GAME1") is None
        assert coordinator.connections.sids_for_game("GAME1") == []
        assert server.last("game-closed").data == {"reason": ALL_EXITED_REASON}
        record = await coordinator.repository.get_game("GAME1")
        assert record.status == GameStatus.CLOSED

    async def test_rejoin_after_exit_counts_as_present(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_exit_game("sid-0")
        await coordinator.handle_join_game("sid-9", {
            "gameId": "GAME1", "playerName": "Alice", "walletAddress": "wallet-0",
        })
        assert "wallet-0" not in session.exited_players

        await coordinator.handle_exit_game("sid-1")

        assert coordinator.sessions.get("GAME1") is session
        assert server.last("game-closed") is None
        assert session.host == "wallet-0"


class TestDisconnect:
    async def test_host_failover_on_disconnect(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob", "Carol")
        server.clear()

        await coordinator.handle_disconnect("sid-0")

        assert session.find_player("wallet-0").connected is False
        assert session.host == "wallet-1"
        assert server.names(room="GAME1") == ["game-state", "player-disconnected"]
        assert server.last("player-disconnected").data == {"playerName": "Alice"}

    async def test_all_disconnect_keeps_last_host(self, open_game, coordinator):
        session = await open_game("Alice", "Bob", "Carol")
        for sid in ("sid-0", "sid-1", "sid-2"):
            await coordinator.handle_disconnect(sid)
        assert session.host == "wallet-2"
        assert coordinator.sessions.get("GAME1") is session


class TestRoundTicks:
    async def test_round_end_broadcast(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        session.round.phase = Counting(seconds_remaining=1)
        server.clear()

        assert await coordinator.handle_round_tick(session) is True

        assert server.names(room="GAME1") == ["round-ended", "game-state"]
        assert server.last("round-ended").data == {"round": 1, "timeRemaining": 10}

    async def test_final_round_finishes_game(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        await coordinator.handle_player_action("sid-1", {"action": "Buy", "resource": "gold", "amount": 1})
        session.market_prices["gold"] = 500
        session.round.current = session.round.max_rounds
        session.round.phase = RoundDelay(seconds_remaining=1)
        server.clear()

        assert await coordinator.handle_round_tick(session) is False
        await coordinator.drain()

        assert server.names(room="GAME1") == ["game-finished", "game-state"]
        finished = server.last("game-finished").data
        assert finished["winner"]["name"] == "Bob"
        assert finished["winner"]["finalScore"] == 1400
        assert session.status == GameStatus.FINISHED
        assert not coordinator.timers.has_inactivity("GAME1")
        record = await coordinator.repository.get_game("GAME1")
        assert record.status == GameStatus.FINISHED

    async def test_timer_task_drives_ticks(self, open_game, coordinator, server):
        session = await open_game("Alice", "Bob")
        coordinator.tick_interval = 0.01
        await coordinator.handle_start_game("sid-0")
        await asyncio.sleep(0.1)
        assert session.round.phase.seconds_remaining < 60
        assert len(server.events("game-state", room="GAME1")) > 2


class TestInactivity:
    async def test_inactive_game_is_closed(self, open_game, coordinator, server):
        await open_game("Alice", "Bob")
        coordinator.inactivity_timeout = 0.01
        await coordinator.handle_start_game("sid-0")
        await asyncio.sleep(0.05)
        await coordinator.drain()

        assert coordinator.sessions.get("GAME1") is None
        assert server.last("game-closed").data == {"reason": INACTIVITY_REASON}
        assert not coordinator.timers.has_round_task("GAME1")

    async def test_activity_resets_deadline(self, open_game, coordinator):
        await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        first = coordinator.timers._inactivity["GAME1"]
        await coordinator.handle_player_action("sid-1", {"action": "Buy", "resource": "gold", "amount": 1})
        assert coordinator.timers._inactivity["GAME1"] is not first
        assert first.cancelled()


class TestMarketCycle:
    async def test_only_playing_games_fluctuate(self, open_game, coordinator, server):
        playing = await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        await coordinator.handle_create_game("sid-5", {"gameId": "IDLE", "playerName": "Zed"})
        await coordinator.drain()
        server.clear()

        await coordinator.run_market_cycle()

        assert server.names(room="GAME1") == ["game-state"]
        assert server.names(room="IDLE") == []
        assert all(-5 <= c.change <= 4 for c in playing.market_changes)


class TestLobby:
    async def test_public_games_list(self, open_game, coordinator, server):
        await open_game("Alice")
        await coordinator.handle_create_game("sid-5", {
            "gameId": "SECRET", "playerName": "Zed", "isPrivate": True,
        })
        await coordinator.drain()

        await coordinator.handle_get_public_games("sid-9")

        listing = server.last("public-games-list").data
        assert [g["id"] for g in listing] == ["GAME1"]
        assert listing[0]["status"] == "Open"
        assert listing[0]["hostName"] == "Alice"
        assert listing[0]["currentPlayers"] == 1
        assert listing[0]["maxPlayers"] == 4

    async def test_listing_on_store_failure(self, server, broken_repository):
        from backend.app.coordinator import GameCoordinator

        coordinator = GameCoordinator(server, broken_repository)
        await coordinator.handle_get_public_games("sid-0")
        assert server.last("public-games-list").data == []


class TestShutdown:
    async def test_round_tasks_finish_before_returning(self, open_game, coordinator):
        await open_game("Alice", "Bob")
        await coordinator.handle_start_game("sid-0")
        task = coordinator.timers._round_tasks["GAME1"]

        await coordinator.shutdown()

        assert task.done()
        assert task.cancelled()
        assert not coordinator.timers.has_inactivity("GAME1")
