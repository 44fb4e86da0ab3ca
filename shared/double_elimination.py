"""
Двойное выбывание (double elimination).

Первое поражение в верхней сетке переводит игрока в нижнюю, второе поражение
(уже в нижней сетке) выбивает из турнира. Чемпионы обеих сеток встречаются в
суперфинале; если побеждает чемпион нижней сетки, назначается переигровка.
"""
import logging
import math
from typing import Dict, List, Optional

from exceptions import StateError
from tournament_format import (
    TournamentFormat, Participant, Match, MatchType, BracketType,
    next_power_of_two, chunk, simulate_elimination_rounds,
)

logger = logging.getLogger("tournament_online.engine")


class DoubleElimination(TournamentFormat):
    """
    Двойное выбывание.

    Раунды нижней сетки генерируются по готовности: раунд L строится, когда
    завершён раунд L-1 нижней сетки и раунд верхней сетки, из которого в L
    падают проигравшие (либо этот раунд верхней сетки уже не состоится).
    """

    FORMAT_NAME = "double_elimination"
    DISPLAY_NAME = "Double Elimination"
    DESCRIPTION = "Игрок выбывает только после второго поражения"
    FEATURES = ["Верхняя и нижняя сетки", "Суперфинал с возможной переигровкой", "Второй шанс для каждого"]
    COMPLEXITY = "complex"
    OPTIMAL_PLAYER_COUNTS = [8, 16, 32]

    def __init__(self, config: Optional[Dict] = None):
        super().__init__(config)
        self._reset_bracket_state()

    def _reset_bracket_state(self):
        self.bracket_size = 0
        self.winners_rounds_planned = 0
        self.losers_rounds_planned = 0
        self.winners_rounds: Dict[int, Dict] = {}
        self.losers_rounds: Dict[int, Dict] = {}
        self.winners_queue: Dict[int, List[str]] = {}
        self.losers_queue: Dict[int, List[str]] = {}
        self.advanced_players: Dict[str, List[str]] = {"grand_finals": []}
        self.player_bracket: Dict[str, str] = {}  # winners | losers | grand_finals | eliminated | champion
        self.next_losers_round = 1
        self.winners_champion: Optional[str] = None
        self.losers_champion: Optional[str] = None
        self.grand_finals: Optional[Match] = None
        self.grand_finals_reset: Optional[Match] = None
        self.champion_id: Optional[str] = None
        self.runner_up_id: Optional[str] = None

    @staticmethod
    def losers_round_from_winners_round(winners_round: int) -> int:
        """В какой раунд нижней сетки попадают проигравшие раунда верхней сетки."""
        return 1 if winners_round == 1 else (winners_round - 1) * 2

    @staticmethod
    def _feeder_winners_round(losers_round: int) -> Optional[int]:
        if losers_round == 1:
            return 1
        if losers_round % 2 == 0:
            return losers_round // 2 + 1
        return None

    def initialize(self, tournament_id: str, players: List[Dict]) -> Dict:
        self.validate_start(len(players))
        self.tournament_id = tournament_id
        self.initialize_participants(players)
        bracket = self.generate_bracket()

        logger.info(
            f"Турнир {tournament_id} (double elimination): {len(players)} игроков, "
            f"раундов верхней сетки: {self.winners_rounds_planned}, нижней: {self.losers_rounds_planned}"
        )
        return {
            "tournament_id": tournament_id,
            "format": self.FORMAT_NAME,
            "bracket": bracket,
            "bracket_size": self.bracket_size,
            "winners_rounds": self.winners_rounds_planned,
            "losers_rounds": self.losers_rounds_planned,
            "total_rounds": self.get_total_rounds(),
            "total_matches": self.statistics["total_matches"],
        }

    def generate_bracket(self) -> Dict:
        ordered = self.apply_seeding()
        self._reset_bracket_state()

        self.bracket_size = next_power_of_two(len(ordered))
        self.winners_rounds_planned = int(math.log2(self.bracket_size))
        self.losers_rounds_planned = max(1, 2 * self.winners_rounds_planned - 1)
        self.max_rounds = self.winners_rounds_planned + self.losers_rounds_planned + 1
        self.current_round = 1

        for participant in ordered:
            self.player_bracket[participant.player_id] = "winners"

        bye_count = self.bracket_size - len(ordered)
        for participant in ordered[:bye_count]:
            self._queue_winners(participant.player_id, 2, via="bye")

        self._build_winners_round(1, [p.player_id for p in ordered[bye_count:]])
        return self.get_bracket()

    # ---------- Построение раундов ----------

    def _queue_winners(self, player_id: str, round_number: int, via: str):
        self.winners_queue.setdefault(round_number, []).append(player_id)
        self.participants[player_id].current_round = round_number
        if via == "bye":
            self.record_bye(player_id, round_number)
        else:
            self.player_stats[player_id]["advancement_history"].append(
                {"round": round_number, "bracket": "winners", "via": via}
            )

    def _queue_losers(self, player_id: str, round_number: int, via: str):
        self.losers_queue.setdefault(round_number, []).append(player_id)
        self.participants[player_id].current_round = round_number
        if via == "bye":
            self.record_bye(player_id, round_number)
        else:
            self.player_stats[player_id]["advancement_history"].append(
                {"round": round_number, "bracket": "losers", "via": via}
            )

    def _build_winners_round(self, round_number: int, player_ids: List[str]):
        info = {"round": round_number, "matches": [], "completed": 0, "total": 0}
        self.winners_rounds[round_number] = info
        for group in chunk(player_ids, self.players_per_race):
            if len(group) == 1:
                self._queue_winners(group[0], round_number + 1, via="bye")
                continue
            match = self.create_match(
                round_number,
                [self.participants[player_id] for player_id in group],
                MatchType.STANDARD,
                BracketType.WINNERS,
            )
            info["matches"].append(match.match_id)
        info["total"] = len(info["matches"])
        self.current_round = max(self.current_round, round_number)
        logger.info(f"Турнир {self.tournament_id}: верхняя сетка, раунд {round_number}, матчей: {info['total']}")

    def _build_losers_round(self, round_number: int, player_ids: List[str]):
        info = {"round": round_number, "matches": [], "completed": 0, "total": 0}
        self.losers_rounds[round_number] = info
        self.next_losers_round = round_number + 1

        if len(player_ids) == 1:
            if self._drops_pending_after(round_number):
                self._queue_losers(player_ids[0], round_number + 1, via="bye")
            else:
                self._crown_losers_champion(player_ids[0])
        else:
            for group in chunk(player_ids, self.players_per_race):
                if len(group) == 1:
                    self._queue_losers(group[0], round_number + 1, via="bye")
                    continue
                match = self.create_match(
                    round_number,
                    [self.participants[player_id] for player_id in group],
                    MatchType.STANDARD,
                    BracketType.LOSERS,
                )
                info["matches"].append(match.match_id)

        info["total"] = len(info["matches"])
        self.current_round = max(self.current_round, round_number)
        logger.info(f"Турнир {self.tournament_id}: нижняя сетка, раунд {round_number}, матчей: {info['total']}")

    @staticmethod
    def _round_done(info: Optional[Dict]) -> bool:
        return info is not None and info["completed"] >= info["total"]

    def _feeder_done(self, losers_round: int) -> bool:
        winners_round = self._feeder_winners_round(losers_round)
        if winners_round is None:
            return True
        info = self.winners_rounds.get(winners_round)
        if info is not None:
            return self._round_done(info)
        # Раунд верхней сетки ещё не создан: готово, только если верхняя сетка закончилась
        return self.winners_champion is not None

    def _drops_pending_after(self, losers_round: int) -> bool:
        """Могут ли в нижнюю сетку после раунда losers_round ещё прийти игроки."""
        if self.winners_champion is None:
            return True
        return any(ids for round_number, ids in self.losers_queue.items() if round_number > losers_round)

    def _try_generate_losers(self):
        while self.losers_champion is None:
            round_number = self.next_losers_round
            if round_number > 1 and not self._round_done(self.losers_rounds.get(round_number - 1)):
                return
            if not self._feeder_done(round_number):
                return

            pool = self.losers_queue.pop(round_number, [])
            if not pool and not self._drops_pending_after(round_number):
                raise StateError(f"Нижняя сетка турнира {self.tournament_id} осталась без игроков")

            self._build_losers_round(round_number, pool)
            if self.losers_rounds[round_number]["total"] > 0:
                return

    def _crown_losers_champion(self, player_id: str):
        self.losers_champion = player_id
        self.player_bracket[player_id] = "grand_finals"
        self.advanced_players["grand_finals"].append(player_id)
        logger.info(f"Турнир {self.tournament_id}: чемпион нижней сетки {player_id}")

    def _try_create_grand_finals(self):
        if self.grand_finals is not None or len(self.advanced_players["grand_finals"]) < 2:
            return
        round_number = max(len(self.winners_rounds), len(self.losers_rounds)) + 1
        self.grand_finals = self.create_match(
            round_number,
            [self.participants[self.winners_champion], self.participants[self.losers_champion]],
            MatchType.GRAND_FINALS,
            BracketType.GRAND_FINALS,
        )
        self.current_round = round_number
        logger.info(f"Турнир {self.tournament_id}: суперфинал {self.winners_champion} против {self.losers_champion}")

    # ---------- Ход турнира ----------

    def get_next_match(self) -> Optional[Match]:
        """Следующий матч: сначала верхняя сетка, затем нижняя, затем суперфинал."""
        if self.is_complete():
            return None
        for bracket in (BracketType.WINNERS, BracketType.LOSERS, BracketType.GRAND_FINALS):
            match = self._first_pending(bracket)
            if match is not None:
                return match
        return None

    def complete_match(self, match_id: str, race_result: List[Dict]) -> Dict:
        match, outcome = self._settle_match(match_id, race_result)
        self._on_match_completed(match, outcome)
        return outcome

    def get_advancement_count(self, match: Match) -> int:
        if match.bracket == BracketType.GRAND_FINALS:
            return 1
        return super().get_advancement_count(match)

    def should_eliminate_player(self, match: Match, player_id: str) -> bool:
        if match.bracket == BracketType.WINNERS:
            return False
        if match.match_type == MatchType.GRAND_FINALS:
            # Чемпион верхней сетки после первого поражения получает переигровку
            return player_id != self.winners_champion
        return True

    def _check_match_consistency(self, match: Match):
        super()._check_match_consistency(match)
        expected = {
            BracketType.WINNERS: "winners",
            BracketType.LOSERS: "losers",
            BracketType.GRAND_FINALS: "grand_finals",
        }[match.bracket]
        for player_id in match.player_ids:
            participant = self.participants[player_id]
            if self.player_bracket.get(player_id) != expected:
                raise StateError(
                    f"Игрок {player_id} находится в сетке {self.player_bracket.get(player_id)}, "
                    f"а матч {match.match_id} относится к {expected}"
                )
            if match.bracket == BracketType.LOSERS and participant.losses < 1:
                raise StateError(f"Игрок {player_id} попал в нижнюю сетку без поражения")
            if match.bracket != BracketType.GRAND_FINALS and participant.current_round != match.round:
                raise StateError(f"Игрок {player_id} не ожидает раунд {match.round}")

    def _on_match_completed(self, match: Match, outcome: Dict):
        round_number = match.round
        outcome["round_completed"] = False

        if match.bracket == BracketType.WINNERS:
            for record in outcome["winners"]:
                self._queue_winners(record["player_id"], round_number + 1, via="match")
            drop_round = self.losers_round_from_winners_round(round_number)
            for record in outcome["losers"]:
                self.player_bracket[record["player_id"]] = "losers"
                self._queue_losers(record["player_id"], drop_round, via="drop")
                logger.debug(f"Игрок {record['player_id']} переходит в нижнюю сетку, раунд {drop_round}")
            info = self.winners_rounds[round_number]
            info["completed"] += 1
            if self._round_done(info):
                outcome["round_completed"] = True
                self._complete_winners_round(round_number)

        elif match.bracket == BracketType.LOSERS:
            for record in outcome["winners"]:
                self._queue_losers(record["player_id"], round_number + 1, via="match")
            for record in outcome["losers"]:
                self.player_bracket[record["player_id"]] = "eliminated"
                self.eliminate_participant(
                    record["player_id"], f"losers_round_{round_number}", round_number, record
                )
            info = self.losers_rounds[round_number]
            info["completed"] += 1
            if self._round_done(info):
                outcome["round_completed"] = True
                self._try_generate_losers()

        else:
            outcome["round_completed"] = True
            self._complete_grand_finals(match, outcome)

        self._try_create_grand_finals()
        outcome["tournament_complete"] = self.is_complete()

    def _complete_winners_round(self, round_number: int):
        advanced = self.winners_queue.get(round_number + 1, [])
        if not advanced:
            raise StateError(f"После раунда {round_number} верхней сетки не осталось игроков")

        if len(advanced) == 1:
            self.winners_champion = self.winners_queue.pop(round_number + 1)[0]
            self.player_bracket[self.winners_champion] = "grand_finals"
            self.advanced_players["grand_finals"].append(self.winners_champion)
            logger.info(f"Турнир {self.tournament_id}: чемпион верхней сетки {self.winners_champion}")
        else:
            self._build_winners_round(round_number + 1, self.winners_queue.pop(round_number + 1))

        self._try_generate_losers()

    def _complete_grand_finals(self, match: Match, outcome: Dict):
        winner = outcome["winners"][0]
        loser = outcome["losers"][0]

        if match.match_type == MatchType.GRAND_FINALS and winner["player_id"] == self.losers_champion:
            self.grand_finals_reset = self.create_match(
                match.round + 1,
                [self.participants[self.winners_champion], self.participants[self.losers_champion]],
                MatchType.GRAND_FINALS_RESET,
                BracketType.GRAND_FINALS,
            )
            self.current_round = match.round + 1
            logger.info(f"Турнир {self.tournament_id}: назначена переигровка суперфинала")
            return

        self.player_bracket[loser["player_id"]] = "eliminated"
        self.eliminate_participant(loser["player_id"], match.match_type.value, match.round, loser)
        self.player_bracket[winner["player_id"]] = "champion"
        self.champion_id = winner["player_id"]
        self.runner_up_id = loser["player_id"]
        logger.info(f"Турнир {self.tournament_id}: победитель {self.champion_id}")

    def is_complete(self) -> bool:
        return self.champion_id is not None

    # ---------- Таблица и сводки ----------

    def _standing_key(self, participant: Participant) -> tuple:
        terminal_depth = len(self.winners_rounds) + len(self.losers_rounds) + 2
        if participant.is_eliminated:
            alive = 0
            if participant.eliminated_in and participant.eliminated_in.startswith("losers_round_"):
                depth, priority = participant.eliminated_round, 1
            else:
                depth, priority = terminal_depth, 2
        else:
            alive = 1
            location = self.player_bracket.get(participant.player_id)
            if location in ("grand_finals", "champion"):
                depth, priority = terminal_depth, 2
            elif location == "losers":
                depth, priority = participant.current_round, 1
            else:
                depth, priority = self.losers_round_from_winners_round(participant.current_round), 0
        points = self.player_stats[participant.player_id]["total_points"]
        return (alive, depth, priority, -participant.losses, points, -participant.seed)

    def get_final_standings(self) -> List[Dict]:
        """
        Итоговая таблица: чемпион, финалист, затем выбывшие по месту выбывания.

        Выбывшие в нижней сетке стоят выше игроков той же глубины, только упавших
        из верхней сетки.
        """
        ordered = []
        if self.champion_id:
            ordered.append(self.participants[self.champion_id])
            ordered.append(self.participants[self.runner_up_id])
        rest = [p for p in self.participants.values()
                if p.player_id not in (self.champion_id, self.runner_up_id)]
        rest.sort(key=self._standing_key, reverse=True)
        ordered.extend(rest)

        standings = []
        for position, participant in enumerate(ordered, start=1):
            entry = self._standing_entry(position, participant)
            entry["bracket"] = self.player_bracket.get(participant.player_id)
            standings.append(entry)
        return standings

    def _rounds_view(self, rounds: Dict[int, Dict], bracket: BracketType) -> List[Dict]:
        view = []
        for round_number in sorted(rounds):
            info = rounds[round_number]
            view.append({
                "round": round_number,
                "bracket": bracket.value,
                "matches": [self.matches[match_id].to_dict() for match_id in info["matches"]],
                "completed_matches": info["completed"],
                "total_matches": info["total"],
            })
        return view

    def get_bracket(self) -> Dict:
        finals = []
        if self.grand_finals is not None:
            finals.append(self.grand_finals.to_dict())
        if self.grand_finals_reset is not None:
            finals.append(self.grand_finals_reset.to_dict())
        return {
            "bracket_size": self.bracket_size,
            "winners": self._rounds_view(self.winners_rounds, BracketType.WINNERS),
            "losers": self._rounds_view(self.losers_rounds, BracketType.LOSERS),
            "grand_finals": finals,
            "winners_champion": self.winners_champion,
            "losers_champion": self.losers_champion,
            "champion": self.champion_id,
        }

    def get_total_rounds(self) -> int:
        played = len(self.winners_rounds) + len(self.losers_rounds)
        played += (1 if self.grand_finals else 0) + (1 if self.grand_finals_reset else 0)
        return max(self.max_rounds, played)

    def get_bracket_summary(self) -> Dict:
        summary = super().get_bracket_summary()
        summary.update({
            "winners_rounds": len(self.winners_rounds),
            "losers_rounds": len(self.losers_rounds),
            "winners_champion": self.winners_champion,
            "losers_champion": self.losers_champion,
            "grand_finals_reset": self.grand_finals_reset is not None,
        })
        return summary

    def get_player_bracket_status(self, player_id: str) -> Optional[str]:
        return self.player_bracket.get(player_id)

    def estimate_match_count(self, player_count: int) -> int:
        winners = sum(simulate_elimination_rounds(player_count, self.players_per_race))
        # Нижняя сетка примерно повторяет верхнюю, плюс суперфинал и переигровка
        return 2 * winners + 1
