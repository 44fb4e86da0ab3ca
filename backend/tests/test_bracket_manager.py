"""
Unit-тесты для фасада турнирной сетки.
"""
import pytest
import sys
from pathlib import Path

# Добавляем путь к backend и shared модулям
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "shared"))

from bracket_manager import BracketManager
from schemas import RaceResult
from exceptions import ValidationError


def make_players(count):
    return [{"player_id": f"p{i}", "player_name": f"Player {i}"} for i in range(1, count + 1)]


def finish_in_order(manager, match):
    order = [p["player_id"] for p in match["players"] if not p["is_bye"]]
    return manager.complete_match(match["match_id"], [
        {"participant_id": pid, "finish_position": position, "race_time_ms": 60000 + position * 1000}
        for position, pid in enumerate(order, start=1)
    ])


class TestFormats:
    """Тесты реестра форматов."""

    def test_available_formats(self):
        formats = BracketManager.get_available_formats()
        assert [f["key"] for f in formats] == ["single_elimination", "double_elimination", "round_robin"]
        assert all(f["estimated_matches"] > 0 for f in formats)

    def test_validate_format_config(self):
        assert BracketManager.validate_format_config("single_elimination") == []
        assert BracketManager.validate_format_config("swiss") == ["Неподдерживаемый формат: swiss"]
        assert BracketManager.validate_format_config("round_robin", {"max_players": 64})
        assert BracketManager.validate_format_config("single_elimination", {"players_per_race": 9})

    def test_round_robin_roster_size(self):
        config = {"max_players": 32, "players_per_race": 2}
        errors = BracketManager.validate_format_config("round_robin", config)
        assert errors == ["Слишком много матчей для круговой системы: 496 > 200"]
        assert BracketManager.validate_format_config("round_robin", config, player_count=20) == []

        manager = BracketManager("t1")
        with pytest.raises(ValidationError):
            manager.create_tournament(dict(config, format="round_robin"), make_players(32))
        assert manager.format is None
        assert manager.is_active is False


class TestLifecycle:
    """Тесты работы с сеткой."""

    def test_empty_manager(self):
        manager = BracketManager("t1")
        assert manager.start_next_match() is None
        assert manager.complete_match("missing", []) is None
        assert manager.get_bracket() is None
        assert manager.legacy_bracket == []
        assert manager.journal == []

        summary = manager.get_bracket_summary()
        assert summary["format"] == "unknown"
        assert summary["total_matches"] == 0

    def test_invalid_config(self):
        manager = BracketManager("t1")
        with pytest.raises(ValidationError):
            manager.create_tournament({"format": "swiss"}, make_players(4))
        with pytest.raises(ValidationError):
            manager.create_tournament({"max_players": 4}, make_players(6))

    def test_create_and_play(self):
        manager = BracketManager("t1")
        result = manager.create_tournament({"max_players": 8, "players_per_race": 2}, make_players(8))
        assert len(result["first_round_matches"]) == 4

        with pytest.raises(ValidationError):
            manager.create_tournament({"max_players": 8}, make_players(8))

        while not manager.is_complete:
            match = manager.start_next_match()
            assert match is not None
            finish_in_order(manager, match)

        status = manager.get_status()
        assert status["is_complete"] is True
        assert status["is_active"] is False
        assert status["completed_matches"] == 7
        assert manager.get_final_standings()[0]["player_id"] == "p1"
        assert len(manager.legacy_bracket) == 7

    def test_race_result_model_accepted(self):
        manager = BracketManager("t1")
        manager.create_tournament({"max_players": 4, "players_per_race": 4}, make_players(4))
        match = manager.start_next_match()

        race_result = RaceResult.model_validate({"entries": [
            {"participant_id": pid, "finish_position": position}
            for position, pid in enumerate(["p4", "p3", "p2", "p1"], start=1)
        ]})
        outcome = manager.complete_match(match["match_id"], race_result)
        assert outcome["winners"][0]["player_id"] == "p4"

    def test_double_elimination_views(self):
        manager = BracketManager("t1")
        manager.create_tournament({"format": "double_elimination", "max_players": 4, "players_per_race": 2},
                                  make_players(4))
        for _ in range(2):
            finish_in_order(manager, manager.start_next_match())

        assert {m["bracket"] for m in manager.legacy_bracket} == {"winners", "losers"}
        assert len(manager.get_matches_for_round(1, "winners")) == 2
        assert len(manager.get_matches_for_round(1, "losers")) == 1
        with pytest.raises(ValidationError):
            manager.get_matches_for_round(1, "upper")
        assert manager.get_head_to_head_record("p1", "p2") is None

    def test_round_robin_does_not_double_book(self):
        manager = BracketManager("t1")
        manager.create_tournament({"format": "round_robin", "max_players": 6, "players_per_race": 3},
                                  make_players(6))
        started = []
        while True:
            match = manager.start_next_match()
            if match is None:
                break
            started.append(match)

        players = [p["player_id"] for match in started for p in match["players"]]
        assert started
        assert len(players) == len(set(players))
        assert manager.get_current_standings()

    def test_restore_replays_journal(self):
        manager = BracketManager("t1")
        config = {"max_players": 8, "players_per_race": 2, "rng_seed": 7}
        manager.create_tournament(config, make_players(8))
        for _ in range(3):
            finish_in_order(manager, manager.start_next_match())

        restored = BracketManager("t1")
        restored.restore(config, make_players(8), manager.journal)

        def layout(bracket_manager):
            return [(m["match_id"], m["status"], m["winner"]) for m in bracket_manager.legacy_bracket]

        assert layout(restored) == layout(manager)
        assert restored.journal == manager.journal

    def test_cancel_and_cleanup(self):
        manager = BracketManager("t1")
        manager.create_tournament({"max_players": 4, "players_per_race": 2}, make_players(4))
        manager.start_next_match()

        assert manager.cancel_open_matches() == 2
        assert manager.get_active_matches() == []

        manager.cleanup()
        assert manager.format is None
        assert manager.get_final_standings() == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
