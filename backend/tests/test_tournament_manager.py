"""
Тесты жизненного цикла турниров.
"""
import pytest
import sys
import os
from datetime import datetime, timedelta
from pathlib import Path

import pytz

# Добавляем путь к backend и shared модулям
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "shared"))

from config import ManagerSettings
from database import TournamentStateManager
from events import EventBus, TournamentEvent
from tournament import TournamentManager, format_duration
from exceptions import ValidationError, NotFoundError, StateError
from round_robin import RoundRobin

TEST_DB = "test_tournament_manager.db"


class FakeClock:
    """Управляемые часы для проверки сроков регистрации."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=pytz.UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def make_players(count):
    return [{"player_id": f"p{i}", "player_name": f"Player {i}"} for i in range(1, count + 1)]


def race_result(order):
    return [
        {"participant_id": pid, "finish_position": position, "race_time_ms": 60000 + position * 500}
        for position, pid in enumerate(order, start=1)
    ]


def match_players(manager, tournament_id, match_id):
    match = manager.tournaments[tournament_id].bracket_manager.get_match(match_id)
    return [p["player_id"] for p in match["players"] if not p["is_bye"]]


async def play_out(manager, tournament_id):
    """Доигрывает турнир: в каждом заезде игроки финишируют в порядке матча."""
    while tournament_id in manager.tournaments:
        match_id = manager.tournaments[tournament_id].current_matches[0]
        await manager.submit_match_result(match_id, race_result(match_players(manager, tournament_id, match_id)))


def of_kind(events, kind):
    return [payload for event, payload in events if event == kind]


@pytest.fixture
async def store():
    """Создаёт тестовое хранилище."""
    state = TournamentStateManager(TEST_DB)
    await state.initialize()
    yield state
    # Очистка после тестов
    if os.path.exists(TEST_DB):
        os.remove(TEST_DB)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return []


@pytest.fixture
def bus(events):
    event_bus = EventBus()
    event_bus.subscribe_all(lambda event, payload: events.append((event, payload)))
    return event_bus


@pytest.fixture
def settings():
    return ManagerSettings(db_path=TEST_DB, max_concurrent_tournaments=5)


@pytest.fixture
def manager(store, bus, settings, clock):
    return TournamentManager(store, bus, settings, clock)


class TestCreation:
    """Тесты создания турнира."""

    @pytest.mark.asyncio
    async def test_create_tournament(self, manager, store, events):
        data = await manager.create_tournament("creator", {"name": "Cup", "max_players": 8})
        tournament_id = data["tournament_id"]

        assert data["status"] == "registration"
        assert data["format"] == "single_elimination"
        assert data["registration_deadline"] == "2024-01-01T12:10:00+00:00"
        assert manager.tournaments[tournament_id].config.rng_seed is not None
        assert events[0][0] == TournamentEvent.TOURNAMENT_CREATED
        assert (await store.load_tournament(tournament_id))["status"] == "registration"

    @pytest.mark.asyncio
    async def test_invalid_config(self, manager):
        with pytest.raises(ValidationError):
            await manager.create_tournament("creator", {"format": "swiss"})
        with pytest.raises(ValidationError):
            await manager.create_tournament("creator", {"max_players": 2})
        with pytest.raises(ValidationError):
            await manager.create_tournament("creator", {"min_players": 10, "max_players": 8})

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, store, bus, clock):
        limited = TournamentManager(store, bus, ManagerSettings(max_concurrent_tournaments=1), clock)
        await limited.create_tournament("creator", {})
        with pytest.raises(StateError):
            await limited.create_tournament("creator", {})

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_creation(self, manager, bus):
        def broken(event, payload):
            raise RuntimeError("boom")

        received = []

        async def async_handler(event, payload):
            received.append(payload["tournament_id"])

        bus.subscribe(TournamentEvent.TOURNAMENT_CREATED, broken)
        bus.subscribe(TournamentEvent.TOURNAMENT_CREATED, async_handler)

        data = await manager.create_tournament("creator", {})
        assert received == [data["tournament_id"]]

    @pytest.mark.asyncio
    async def test_round_robin_limits_checked_at_creation(self, manager, events):
        too_many_matches = {"format": "round_robin", "max_players": 32, "players_per_race": 2}
        with pytest.raises(ValidationError):
            await manager.create_tournament("creator", too_many_matches)
        with pytest.raises(ValidationError):
            await manager.create_tournament("creator", {"format": "round_robin", "max_players": 40})

        assert manager.tournaments == {}
        assert events == []


class TestRegistration:
    """Тесты регистрации игроков и зрителей."""

    @pytest.mark.asyncio
    async def test_register_and_unregister(self, manager, events):
        tournament_id = (await manager.create_tournament("creator", {"max_players": 8}))["tournament_id"]
        for player in make_players(3):
            await manager.register_player(tournament_id, player)

        with pytest.raises(ValidationError):
            await manager.register_player(tournament_id, {"player_id": "p1"})

        data = await manager.unregister_player(tournament_id, "p2")
        assert [(p["player_id"], p["seed"]) for p in data["players"]] == [("p1", 1), ("p3", 2)]
        assert data["status"] == "registration"

        with pytest.raises(NotFoundError):
            await manager.unregister_player(tournament_id, "p2")
        with pytest.raises(NotFoundError):
            await manager.register_player("missing", {"player_id": "p9"})

        assert len(of_kind(events, TournamentEvent.TOURNAMENT_PLAYER_REGISTERED)) == 3
        assert len(of_kind(events, TournamentEvent.TOURNAMENT_PLAYER_UNREGISTERED)) == 1

    @pytest.mark.asyncio
    async def test_auto_start_at_capacity(self, manager, events):
        data = await manager.create_tournament("creator", {"max_players": 4}, roster=make_players(4))
        tournament_id = data["tournament_id"]

        tournament = manager.tournaments[tournament_id]
        assert tournament.status == "active"
        assert len(of_kind(events, TournamentEvent.TOURNAMENT_STARTED)) == 1

        rooms = of_kind(events, TournamentEvent.TOURNAMENT_ROOM_REQUESTED)
        assert len(rooms) == 1
        room = rooms[0]
        assert room["room_code"] == "TOURN_" + room["match_id"][-8:]
        assert room["race_time_limit"] == 300
        assert room["betting_enabled"] is True
        assert sorted(p["player_id"] for p in room["players"]) == ["p1", "p2", "p3", "p4"]
        assert tournament.current_matches == [room["match_id"]]

        with pytest.raises(StateError):
            await manager.register_player(tournament_id, {"player_id": "p5"})
        with pytest.raises(StateError):
            await manager.unregister_player(tournament_id, "p1")

    @pytest.mark.asyncio
    async def test_failed_auto_start_rolls_back_registration(self, manager, events, monkeypatch):
        config = {"format": "round_robin", "max_players": 8, "players_per_race": 2}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(7)))["tournament_id"]

        # Лимит матчей ужесточён уже после создания турнира
        monkeypatch.setattr(RoundRobin, "MAX_ESTIMATED_MATCHES", 10)
        with pytest.raises(ValidationError):
            await manager.register_player(tournament_id, {"player_id": "p8"})

        tournament = manager.tournaments[tournament_id]
        assert tournament.status == "registration"
        assert tournament.player_count == 7
        assert not tournament.has_player("p8")
        assert len(of_kind(events, TournamentEvent.TOURNAMENT_PLAYER_REGISTERED)) == 7
        assert manager.can_player_register(tournament_id, "p8")["can_register"] is True

        monkeypatch.setattr(RoundRobin, "MAX_ESTIMATED_MATCHES", 200)
        data = await manager.register_player(tournament_id, {"player_id": "p8"})
        assert data["status"] == "active"

    @pytest.mark.asyncio
    async def test_deadline_start(self, manager, clock):
        config = {"max_players": 8, "registration_time_limit": 60}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(4)))["tournament_id"]

        assert manager.can_player_register(tournament_id, "p9") == {"can_register": True, "reasons": []}
        assert await manager.check_tournament_start(tournament_id) is False

        clock.advance(61)
        check = manager.can_player_register(tournament_id, "p9")
        assert check["can_register"] is False
        assert await manager.check_tournament_start(tournament_id) is True
        assert manager.tournaments[tournament_id].status == "active"

    @pytest.mark.asyncio
    async def test_late_registration_rejected(self, manager, clock):
        config = {"max_players": 8, "registration_time_limit": 60}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(2)))["tournament_id"]

        clock.advance(120)
        with pytest.raises(StateError):
            await manager.register_player(tournament_id, {"player_id": "p3"})
        assert manager.tournaments[tournament_id].status == "registration"

    @pytest.mark.asyncio
    async def test_manual_start(self, manager):
        tournament_id = (await manager.create_tournament("creator", {"max_players": 8}, roster=make_players(3)))["tournament_id"]
        with pytest.raises(ValidationError):
            await manager.start_tournament(tournament_id)

        await manager.register_player(tournament_id, {"player_id": "p4"})
        data = await manager.start_tournament(tournament_id)
        assert data["status"] == "active"
        assert data["bracket"]["total_players"] == 4

        with pytest.raises(StateError):
            await manager.start_tournament(tournament_id)

    @pytest.mark.asyncio
    async def test_spectators(self, manager, events):
        tournament_id = (await manager.create_tournament("creator", {"spectator_count": 1}))["tournament_id"]

        assert await manager.add_spectator(tournament_id, "s1") is True
        assert await manager.add_spectator(tournament_id, "s1") is False
        with pytest.raises(ValidationError):
            await manager.add_spectator(tournament_id, "s2")

        assert await manager.remove_spectator(tournament_id, "s1") is True
        assert await manager.remove_spectator(tournament_id, "s1") is False
        assert len(of_kind(events, TournamentEvent.TOURNAMENT_SPECTATOR_JOINED)) == 1


class TestMatches:
    """Тесты приёма результатов."""

    @pytest.mark.asyncio
    async def test_unknown_match(self, manager):
        with pytest.raises(NotFoundError):
            await manager.submit_match_result("missing", race_result(["p1", "p2"]))

    @pytest.mark.asyncio
    async def test_invalid_result_keeps_match_open(self, manager):
        tournament_id = (await manager.create_tournament("creator", {"max_players": 4}, roster=make_players(4)))["tournament_id"]
        match_id = manager.tournaments[tournament_id].current_matches[0]

        with pytest.raises(ValidationError):
            await manager.submit_match_result(match_id, race_result(["p1", "p9"]))
        with pytest.raises(ValidationError):
            await manager.submit_match_result(match_id, [{"participant_id": "p1", "finish_position": 0}])

        assert manager.tournaments[tournament_id].current_matches == [match_id]
        assert manager.get_statistics()["matches_played"] == 0

    @pytest.mark.asyncio
    async def test_round_robin_never_double_books(self, manager):
        config = {"format": "round_robin", "max_players": 6, "players_per_race": 3}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(6)))["tournament_id"]

        tournament = manager.tournaments[tournament_id]
        busy = [pid for match_id in tournament.current_matches
                for pid in match_players(manager, tournament_id, match_id)]
        assert len(busy) == len(set(busy))


class TestLifecycle:
    """Тесты полного прохождения турниров."""

    @pytest.mark.asyncio
    async def test_single_elimination_to_completion(self, manager, store, events):
        config = {"max_players": 8, "players_per_race": 2}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(8)))["tournament_id"]

        await play_out(manager, tournament_id)

        data = await manager.get_tournament_public_data(tournament_id)
        assert data["status"] == "completed"
        assert data["winner"]["player_id"] == "p1"
        assert len(data["final_standings"]) == 8
        assert data["duration"] == "0s"

        assert len(of_kind(events, TournamentEvent.TOURNAMENT_MATCH_COMPLETED)) == 7
        assert len(of_kind(events, TournamentEvent.TOURNAMENT_COMPLETED)) == 1
        assert of_kind(events, TournamentEvent.TOURNAMENT_ROUND_COMPLETED)
        assert "bracket" in of_kind(events, TournamentEvent.TOURNAMENT_MATCH_STARTED)[0]

        assert len(await store.get_match_history(tournament_id)) == 7
        assert (await store.get_player_statistics("p1"))["tournaments_won"] == 1
        assert await store.load_tournament(tournament_id) is None

        stats = manager.get_statistics()
        assert stats["tournaments_completed"] == 1
        assert stats["matches_played"] == 7
        assert stats["live_matches"] == 0

    @pytest.mark.asyncio
    async def test_double_elimination_to_completion(self, manager):
        config = {"format": "double_elimination", "max_players": 4, "players_per_race": 2}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(4)))["tournament_id"]

        await play_out(manager, tournament_id)

        data = await manager.get_tournament_public_data(tournament_id)
        assert data["status"] == "completed"
        assert [entry["player_id"] for entry in data["final_standings"]] == ["p1", "p3", "p2", "p4"]

    @pytest.mark.asyncio
    async def test_round_robin_to_completion(self, manager):
        config = {"format": "round_robin", "max_players": 6, "players_per_race": 3}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(6)))["tournament_id"]

        await play_out(manager, tournament_id)

        data = await manager.get_tournament_public_data(tournament_id)
        assert data["status"] == "completed"
        assert len(data["final_standings"]) == 6
        assert data["final_standings"][0]["points"] >= data["final_standings"][-1]["points"]

    @pytest.mark.asyncio
    async def test_complete_before_finish_rejected(self, manager):
        tournament_id = (await manager.create_tournament("creator", {"max_players": 4}, roster=make_players(4)))["tournament_id"]
        with pytest.raises(StateError):
            await manager.complete_tournament(tournament_id)


class TestCancellation:
    """Тесты отмены турнира."""

    @pytest.mark.asyncio
    async def test_cancel_active(self, manager, events):
        tournament_id = (await manager.create_tournament("creator", {"max_players": 4}, roster=make_players(4)))["tournament_id"]
        match_id = manager.tournaments[tournament_id].current_matches[0]

        data = await manager.cancel_tournament(tournament_id, "server maintenance")
        assert data["status"] == "cancelled"
        assert data["cancel_reason"] == "server maintenance"

        with pytest.raises(NotFoundError):
            await manager.submit_match_result(match_id, race_result(["p1", "p2", "p3", "p4"]))

        archived = await manager.get_tournament_public_data(tournament_id)
        assert archived["status"] == "cancelled"
        assert len(of_kind(events, TournamentEvent.TOURNAMENT_CANCELLED)) == 1
        assert manager.get_statistics()["live_matches"] == 0
        assert manager.list_active_tournaments() == []

    @pytest.mark.asyncio
    async def test_cancel_registration(self, manager):
        tournament_id = (await manager.create_tournament("creator", {}))["tournament_id"]
        data = await manager.cancel_tournament(tournament_id)
        assert data["status"] == "cancelled"
        with pytest.raises(NotFoundError):
            await manager.cancel_tournament(tournament_id)


class TestRestore:
    """Тесты восстановления после перезапуска."""

    @pytest.mark.asyncio
    async def test_restore_active_tournament(self, manager, settings, clock):
        config = {"max_players": 8, "players_per_race": 2}
        tournament_id = (await manager.create_tournament("creator", config, roster=make_players(8)))["tournament_id"]
        for _ in range(2):
            match_id = manager.tournaments[tournament_id].current_matches[0]
            await manager.submit_match_result(match_id, race_result(match_players(manager, tournament_id, match_id)))

        original = manager.tournaments[tournament_id]
        restarted = TournamentManager(TournamentStateManager(TEST_DB), EventBus(), settings, clock)
        assert await restarted.restore_active_tournaments() == 1

        restored = restarted.tournaments[tournament_id]
        assert restored.status == "active"
        assert sorted(restored.current_matches) == sorted(original.current_matches)
        assert restored.bracket_manager.get_bracket_summary()["completed_matches"] == 2

        await play_out(restarted, tournament_id)
        data = await restarted.get_tournament_public_data(tournament_id)
        assert data["winner"]["player_id"] == "p1"

    @pytest.mark.asyncio
    async def test_restore_registration(self, manager, settings, clock):
        tournament_id = (await manager.create_tournament("creator", {"max_players": 8}, roster=make_players(2)))["tournament_id"]

        restarted = TournamentManager(TournamentStateManager(TEST_DB), EventBus(), settings, clock)
        await restarted.restore_active_tournaments()

        data = await restarted.get_tournament_public_data(tournament_id)
        assert data["status"] == "registration"
        assert data["player_count"] == 2


class TestHelpers:
    """Тесты вспомогательных функций."""

    def test_format_duration(self):
        assert format_duration(3723) == "1h 2m 3s"
        assert format_duration(123) == "2m 3s"
        assert format_duration(3) == "3s"

    @pytest.mark.asyncio
    async def test_list_active(self, manager):
        await manager.create_tournament("creator", {"name": "First"})
        await manager.create_tournament("creator", {"name": "Second"})
        assert [t["name"] for t in manager.list_active_tournaments()] == ["First", "Second"]
        assert manager.get_statistics()["registration_tournaments"] == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
