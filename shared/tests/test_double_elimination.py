"""
Unit-тесты для двойного выбывания.
"""
import pytest
import sys
from pathlib import Path

# Добавляем путь к shared модулю
sys.path.insert(0, str(Path(__file__).parent.parent))

from exceptions import StateError
from tournament_format import MatchStatus, MatchType, BracketType
from double_elimination import DoubleElimination


def make_players(count):
    return [{"player_id": f"p{i}", "player_name": f"Player {i}"} for i in range(1, count + 1)]


def play(fmt, match_id, order=None):
    order = order or fmt.matches[match_id].player_ids
    return fmt.complete_match(match_id, [
        {"participant_id": pid, "finish_position": position, "race_time_ms": 60000 + position * 1000}
        for position, pid in enumerate(order, start=1)
    ])


def play_next(fmt, order=None):
    match = fmt.get_next_match()
    fmt.start_match(match.match_id)
    return match, play(fmt, match.match_id, order)


def run_to_completion(fmt):
    while not fmt.is_complete():
        match = fmt.get_next_match()
        assert match is not None
        fmt.start_match(match.match_id)
        if match.status == MatchStatus.COMPLETED:
            continue
        play(fmt, match.match_id)


@pytest.fixture
def four_players():
    fmt = DoubleElimination({"players_per_race": 2})
    fmt.initialize("de", make_players(4))
    return fmt


class TestBracketGeneration:
    """Тесты построения сетки."""

    def test_initial_layout(self, four_players):
        fmt = four_players
        assert fmt.bracket_size == 4
        assert fmt.winners_rounds_planned == 2
        assert fmt.losers_rounds_planned == 3
        assert [m.player_ids for m in fmt.get_matches(bracket=BracketType.WINNERS)] == [["p1", "p2"], ["p3", "p4"]]
        assert fmt.get_matches(bracket=BracketType.LOSERS) == []
        assert all(fmt.get_player_bracket_status(f"p{i}") == "winners" for i in range(1, 5))

    def test_losers_round_mapping(self):
        assert DoubleElimination.losers_round_from_winners_round(1) == 1
        assert DoubleElimination.losers_round_from_winners_round(2) == 2
        assert DoubleElimination.losers_round_from_winners_round(3) == 4


class TestSecondChance:
    """Тесты правила второго шанса."""

    def test_first_loss_drops_to_losers(self, four_players):
        fmt = four_players
        _, first = play_next(fmt)
        _, second = play_next(fmt)

        dropped = [first["losers"][0]["player_id"], second["losers"][0]["player_id"]]
        assert dropped == ["p2", "p4"]
        for player_id in dropped:
            assert not fmt.participants[player_id].is_eliminated
            assert fmt.participants[player_id].losses == 1
            assert fmt.get_player_bracket_status(player_id) == "losers"
        assert first["losers"][0]["eliminated"] is False

        # Нижняя сетка открывается, как только завершён первый раунд верхней
        losers_round = fmt.get_matches(bracket=BracketType.LOSERS)
        assert [m.player_ids for m in losers_round] == [["p2", "p4"]]

    def test_second_loss_eliminates(self, four_players):
        fmt = four_players
        play_next(fmt)
        play_next(fmt)
        play_next(fmt)  # финал верхней сетки
        match, outcome = play_next(fmt)

        assert match.bracket == BracketType.LOSERS
        loser = outcome["losers"][0]["player_id"]
        assert loser == "p4"
        assert fmt.participants[loser].is_eliminated
        assert fmt.participants[loser].losses == 2
        assert fmt.participants[loser].eliminated_in == "losers_round_1"

    def test_winners_priority(self, four_players):
        fmt = four_players
        play_next(fmt)
        play_next(fmt)
        assert fmt.get_next_match().bracket == BracketType.WINNERS


class TestGrandFinals:
    """Тесты суперфинала."""

    def play_until_grand_finals(self, fmt):
        while fmt.grand_finals is None:
            play_next(fmt)
        return fmt.grand_finals

    def test_winners_champion_wins_outright(self, four_players):
        fmt = four_players
        grand_finals = self.play_until_grand_finals(fmt)
        assert grand_finals.player_ids == ["p1", "p3"]

        fmt.start_match(grand_finals.match_id)
        outcome = play(fmt, grand_finals.match_id, ["p1", "p3"])

        assert outcome["tournament_complete"] is True
        assert fmt.champion_id == "p1"
        assert fmt.runner_up_id == "p3"
        assert fmt.grand_finals_reset is None

    def test_reset_when_losers_champion_wins(self, four_players):
        fmt = four_players
        grand_finals = self.play_until_grand_finals(fmt)

        fmt.start_match(grand_finals.match_id)
        outcome = play(fmt, grand_finals.match_id, ["p3", "p1"])

        assert outcome["tournament_complete"] is False
        assert not fmt.participants["p1"].is_eliminated
        assert outcome["losers"][0]["eliminated"] is False
        assert fmt.grand_finals_reset is not None
        assert fmt.grand_finals_reset.match_type == MatchType.GRAND_FINALS_RESET

        reset = fmt.get_next_match()
        assert reset is fmt.grand_finals_reset
        fmt.start_match(reset.match_id)
        play(fmt, reset.match_id, ["p3", "p1"])

        assert fmt.is_complete()
        assert fmt.champion_id == "p3"
        assert fmt.participants["p1"].is_eliminated
        assert fmt.participants["p1"].losses == 2
        assert fmt.participants["p3"].losses == 1
        assert fmt.get_bracket_summary()["grand_finals_reset"] is True

    def test_standings(self, four_players):
        fmt = four_players
        run_to_completion(fmt)

        standings = fmt.get_final_standings()
        assert [entry["player_id"] for entry in standings] == ["p1", "p3", "p2", "p4"]
        assert standings[0]["bracket"] == "champion"


class TestInvariants:
    """Тесты инвариантов на разных составах."""

    @pytest.mark.parametrize("count,per_race", [(4, 2), (5, 2), (6, 2), (8, 2), (6, 3)])
    def test_everyone_but_champion_loses_twice(self, count, per_race):
        fmt = DoubleElimination({"players_per_race": per_race})
        fmt.initialize("de", make_players(count))
        run_to_completion(fmt)

        champion = fmt.participants[fmt.champion_id]
        assert not champion.is_eliminated
        assert champion.losses <= 1
        for participant in fmt.participants.values():
            if participant.player_id == fmt.champion_id:
                continue
            assert participant.is_eliminated
            assert participant.losses >= 2

    def test_completed_match_rejected(self, four_players):
        fmt = four_players
        match, _ = play_next(fmt)
        with pytest.raises(StateError):
            play(fmt, match.match_id)

    def test_summary_is_idempotent(self, four_players):
        fmt = four_players
        play_next(fmt)
        assert fmt.get_bracket_summary() == fmt.get_bracket_summary()

    def test_bracket_view(self, four_players):
        fmt = four_players
        run_to_completion(fmt)
        bracket = fmt.get_bracket()
        assert len(bracket["winners"]) == 2
        assert len(bracket["grand_finals"]) == 1
        assert bracket["champion"] == "p1"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
