"""
Олимпийская система (single elimination): проигравший выбывает сразу.
"""
import logging
import math
from typing import Dict, List, Optional

from exceptions import StateError
from tournament_format import (
    TournamentFormat, Match, MatchType, BracketType,
    next_power_of_two, chunk, simulate_elimination_rounds,
)

logger = logging.getLogger("tournament_online.engine")


class SingleElimination(TournamentFormat):
    """
    Олимпийская система.

    Размер сетки - ближайшая степень двойки. Лучшие по посеву получают
    автоматический проход во второй раунд, остальные делятся на заезды по
    players_per_race. Одиночка в хвосте раунда проходит дальше без заезда.
    """

    FORMAT_NAME = "single_elimination"
    DISPLAY_NAME = "Single Elimination"
    DESCRIPTION = "Проигравшие в заезде выбывают, победители проходят в следующий раунд"
    FEATURES = ["Быстрый турнир", "Автоматические проходы для лучших посевов", "Один шанс на ошибку"]
    COMPLEXITY = "simple"
    OPTIMAL_PLAYER_COUNTS = [8, 16, 32, 64]

    def __init__(self, config: Optional[Dict] = None):
        super().__init__(config)
        self.bracket_size = 0
        self.bye_count = 0
        self.rounds: Dict[int, Dict] = {}
        self.advanced_players: Dict[int, List[str]] = {}
        self.completed_rounds: List[int] = []
        self.champion_id: Optional[str] = None

    def initialize(self, tournament_id: str, players: List[Dict]) -> Dict:
        """
        Инициализирует турнир и генерирует первый раунд.

        Args:
            tournament_id: ID турнира
            players: Финальный состав участников

        Returns:
            Словарь с параметрами сетки
        """
        self.validate_start(len(players))
        self.tournament_id = tournament_id
        self.initialize_participants(players)
        bracket = self.generate_bracket()

        logger.info(
            f"Турнир {tournament_id} (single elimination): {len(players)} игроков, "
            f"сетка {self.bracket_size}, проходов без заезда: {self.bye_count}"
        )
        return {
            "tournament_id": tournament_id,
            "format": self.FORMAT_NAME,
            "bracket": bracket,
            "bracket_size": self.bracket_size,
            "bye_count": self.bye_count,
            "total_rounds": self.get_total_rounds(),
            "total_matches": self.statistics["total_matches"],
        }

    def generate_bracket(self) -> Dict:
        ordered = self.apply_seeding()
        self.bracket_size = next_power_of_two(len(ordered))
        self.max_rounds = int(math.log2(self.bracket_size))
        self.bye_count = self.bracket_size - len(ordered)
        self.rounds = {}
        self.advanced_players = {}
        self.completed_rounds = []
        self.champion_id = None
        self.current_round = 1

        # Проход без заезда получают лучшие посевы
        for participant in ordered[:self.bye_count]:
            self._advance_player(participant.player_id, 2, via="bye")

        self._build_round(1, [p.player_id for p in ordered[self.bye_count:]])
        return self.get_bracket()

    def _build_round(self, round_number: int, player_ids: List[str]):
        round_info = {"round": round_number, "matches": [], "completed": 0, "total": 0}
        self.rounds[round_number] = round_info

        for group in chunk(player_ids, self.players_per_race):
            if len(group) == 1:
                self._advance_player(group[0], round_number + 1, via="bye")
                continue
            match = self.create_match(
                round_number,
                [self.participants[player_id] for player_id in group],
                MatchType.STANDARD,
                BracketType.MAIN,
            )
            round_info["matches"].append(match.match_id)

        round_info["total"] = len(round_info["matches"])
        # При нескольких игроках в заезде раундов может понадобиться больше, чем log2
        if round_number > self.max_rounds:
            self.max_rounds = round_number
        logger.info(f"Турнир {self.tournament_id}: раунд {round_number}, матчей: {round_info['total']}")

    def _advance_player(self, player_id: str, to_round: int, via: str):
        self.advanced_players.setdefault(to_round, []).append(player_id)
        self.participants[player_id].current_round = to_round
        if via == "bye":
            self.record_bye(player_id, to_round)
        else:
            self.player_stats[player_id]["advancement_history"].append({"round": to_round, "via": via})

    def get_next_match(self) -> Optional[Match]:
        if self.is_complete():
            return None
        return self._first_pending()

    def complete_match(self, match_id: str, race_result: List[Dict]) -> Dict:
        """
        Применяет результат заезда.

        Raises:
            NotFoundError: Матч не найден или не активен
            StateError: Матч уже завершён или состояние сетки нарушено
            ValidationError: Некорректный результат
        """
        match, outcome = self._settle_match(match_id, race_result)
        self._on_match_completed(match, outcome)
        return outcome

    def _check_match_consistency(self, match: Match):
        super()._check_match_consistency(match)
        for player_id in match.player_ids:
            if self.participants[player_id].current_round != match.round:
                raise StateError(
                    f"Игрок {player_id} ожидает раунд {self.participants[player_id].current_round}, "
                    f"а матч {match.match_id} относится к раунду {match.round}"
                )

    def _on_match_completed(self, match: Match, outcome: Dict):
        round_number = match.round
        for record in outcome["winners"]:
            self._advance_player(record["player_id"], round_number + 1, via="match")
        for record in outcome["losers"]:
            self.eliminate_participant(record["player_id"], f"round_{round_number}", round_number, record)

        round_info = self.rounds[round_number]
        round_info["completed"] += 1
        outcome["round_completed"] = round_info["completed"] >= round_info["total"]
        if outcome["round_completed"]:
            self._complete_round(round_number)
        outcome["tournament_complete"] = self.is_complete()

    def _complete_round(self, round_number: int):
        self.completed_rounds.append(round_number)
        advanced = self.advanced_players.get(round_number + 1, [])
        if not advanced:
            raise StateError(f"После раунда {round_number} не осталось игроков")

        if len(advanced) == 1:
            self.champion_id = advanced[0]
            self.participants[self.champion_id].current_round = round_number
            logger.info(f"Турнир {self.tournament_id}: победитель {self.champion_id}")
            return

        self.current_round = round_number + 1
        self._build_round(round_number + 1, list(advanced))

    def is_complete(self) -> bool:
        return self.champion_id is not None

    def get_final_standings(self) -> List[Dict]:
        """
        Итоговая таблица.

        Первое место - победитель финала, дальше по раунду выбывания (позже - выше),
        внутри раунда по месту в заезде и времени.
        """
        ordered = []
        if self.champion_id:
            ordered.append(self.participants[self.champion_id])

        alive = [p for p in self.participants.values()
                 if not p.is_eliminated and p.player_id != self.champion_id]
        alive.sort(key=lambda p: (-p.current_round, p.seed))
        ordered.extend(alive)

        eliminated = [p for p in self.participants.values() if p.is_eliminated]
        eliminated.sort(key=lambda p: (
            -p.eliminated_round,
            p.final_finish_position if p.final_finish_position is not None else math.inf,
            p.final_race_time if p.final_race_time is not None else math.inf,
            p.seed,
        ))
        ordered.extend(eliminated)

        return [self._standing_entry(position, participant)
                for position, participant in enumerate(ordered, start=1)]

    def get_bracket(self) -> Dict:
        rounds = []
        for round_number in sorted(self.rounds):
            info = self.rounds[round_number]
            rounds.append({
                "round": round_number,
                "bracket": BracketType.MAIN.value,
                "matches": [self.matches[match_id].to_dict() for match_id in info["matches"]],
                "completed_matches": info["completed"],
                "total_matches": info["total"],
            })
        return {
            "bracket_size": self.bracket_size,
            "bye_count": self.bye_count,
            "rounds": rounds,
            "advanced_players": {str(r): list(ids) for r, ids in self.advanced_players.items()},
            "champion": self.champion_id,
        }

    def estimate_match_count(self, player_count: int) -> int:
        return sum(simulate_elimination_rounds(player_count, self.players_per_race))
