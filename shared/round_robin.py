"""
Круговая система (round robin): никто не выбывает, места по сумме очков.
"""
import logging
import math
from functools import cmp_to_key
from itertools import combinations
from typing import Dict, List, Optional, Tuple

from tournament_format import TournamentFormat, Match, MatchType, BracketType

logger = logging.getLogger("tournament_online.engine")


def _pair_key(first: str, second: str) -> Tuple[str, str]:
    return (first, second) if first < second else (second, first)


class RoundRobin(TournamentFormat):
    """
    Круговая система.

    Если все участники помещаются в один заезд, турнир состоит из одного матча.
    Иначе расписание строится жадно: в каждом раунде игроки делятся на заезды так,
    чтобы как можно реже повторялись уже встречавшиеся пары. Раунды добавляются,
    пока каждая пара не встретится хотя бы раз (но не больше 2N раундов).
    """

    FORMAT_NAME = "round_robin"
    DISPLAY_NAME = "Round Robin"
    DESCRIPTION = "Каждый встречается с каждым, места определяются по очкам"
    FEATURES = ["Без выбывания", "Личные встречи", "Максимум заездов для каждого"]
    COMPLEXITY = "moderate"
    OPTIMAL_PLAYER_COUNTS = [4, 6, 8, 12]

    MAX_PLAYERS = 32
    MAX_ESTIMATED_MATCHES = 200

    def __init__(self, config: Optional[Dict] = None):
        super().__init__(config)
        self.schedule: List[List[List[str]]] = []
        self.rounds: Dict[int, Dict] = {}
        self.player_records: Dict[str, Dict] = {}
        self.pair_counts: Dict[Tuple[str, str], int] = {}
        self.min_pairings = 0

    def initialize(self, tournament_id: str, players: List[Dict]) -> Dict:
        self.validate_start(len(players))
        self.tournament_id = tournament_id
        self.initialize_participants(players)
        self._initialize_player_records()
        bracket = self.generate_bracket()

        logger.info(
            f"Турнир {tournament_id} (round robin): {len(players)} игроков, "
            f"раундов: {len(self.schedule)}, матчей: {self.statistics['total_matches']}"
        )
        return {
            "tournament_id": tournament_id,
            "format": self.FORMAT_NAME,
            "bracket": bracket,
            "total_rounds": self.get_total_rounds(),
            "total_matches": self.statistics["total_matches"],
            "matches_per_player": self.calculate_matches_per_player(),
        }

    def _initialize_player_records(self):
        self.player_records = {}
        for player_id, participant in self.participants.items():
            self.player_records[player_id] = {
                "player_id": player_id,
                "player_name": participant.player_name,
                "seed": participant.seed,
                "matches_played": 0,
                "wins": 0,
                "losses": 0,
                "points": 0,
                "total_finish_positions": 0,
                "average_finish_position": 0.0,
                "best_finish_position": None,
                "worst_finish_position": None,
                "total_race_time": 0,
                "timed_races": 0,
                "average_race_time": None,
                "head_to_head": {},
                "match_history": [],
            }

    # ---------- Расписание ----------

    def generate_bracket(self) -> Dict:
        ordered = [p.player_id for p in self.apply_seeding()]
        for player_id in ordered:
            self.player_records[player_id]["seed"] = self.participants[player_id].seed

        self.schedule = self._build_schedule(ordered)
        self.rounds = {}
        single_race = len(self.schedule) == 1 and len(self.schedule[0]) == 1 and len(self.schedule[0][0]) == len(ordered)

        for round_number, groups in enumerate(self.schedule, start=1):
            info = {"round": round_number, "matches": [], "completed": 0, "total": len(groups)}
            for group in groups:
                match = self.create_match(
                    round_number,
                    [self.participants[player_id] for player_id in group],
                    MatchType.ROUND_ROBIN_ALL if single_race else MatchType.ROUND_ROBIN,
                    BracketType.MAIN,
                )
                info["matches"].append(match.match_id)
            self.rounds[round_number] = info

        self.max_rounds = len(self.schedule)
        self.current_round = 1
        return self.get_bracket()

    def _build_schedule(self, player_ids: List[str]) -> List[List[List[str]]]:
        """
        Жадное расписание заездов.

        Args:
            player_ids: Участники в порядке посева

        Returns:
            Список раундов, каждый раунд - список групп (заездов)
        """
        count = len(player_ids)
        size = self.players_per_race
        self.pair_counts = {_pair_key(a, b): 0 for a, b in combinations(player_ids, 2)}

        if size >= count:
            self.min_pairings = 1
            for pair in self.pair_counts:
                self.pair_counts[pair] = 1
            return [[list(player_ids)]]

        self.min_pairings = math.ceil((count - 1) / (size - 1))
        races_played = {player_id: 0 for player_id in player_ids}
        schedule = []
        safety_cap = 2 * count

        while not self._schedule_covered(races_played):
            if len(schedule) >= safety_cap:
                logger.warning(
                    f"Турнир {self.tournament_id}: достигнут предел в {safety_cap} раундов, "
                    f"добираем недостающие пары"
                )
                schedule.extend(self._cover_remaining_pairs(player_ids, races_played))
                break
            schedule.append(self._build_schedule_round(player_ids, races_played, len(schedule)))

        return schedule

    def _schedule_covered(self, races_played: Dict[str, int]) -> bool:
        if any(count == 0 for count in self.pair_counts.values()):
            return False
        return all(races >= self.min_pairings for races in races_played.values())

    def _build_schedule_round(self, player_ids: List[str], races_played: Dict[str, int],
                              round_index: int) -> List[List[str]]:
        count = len(player_ids)
        group_count = math.ceil(count / self.players_per_race)
        base, extra = divmod(count, group_count)
        sizes = [base + 1] * extra + [base] * (group_count - extra)

        position = {player_id: index for index, player_id in enumerate(player_ids)}

        def rotation(player_id: str) -> int:
            return (position[player_id] - round_index) % count

        available = sorted(player_ids, key=lambda pid: (races_played[pid], rotation(pid)))
        groups = []
        for size in sizes:
            # Одиночка пропускает раунд
            if size < 2 or len(available) < 2:
                break
            group = [available.pop(0)]
            while len(group) < size and available:
                best = min(available, key=lambda candidate: (
                    sum(self.pair_counts[_pair_key(candidate, member)] for member in group),
                    races_played[candidate],
                    rotation(candidate),
                ))
                available.remove(best)
                group.append(best)
            groups.append(group)

        for group in groups:
            self._register_group(group, races_played)
        return groups

    def _cover_remaining_pairs(self, player_ids: List[str], races_played: Dict[str, int]) -> List[List[List[str]]]:
        extra_rounds = []
        uncovered = [pair for pair, count in self.pair_counts.items() if count == 0]
        while uncovered:
            used = set()
            groups = []
            for first, second in uncovered:
                if first in used or second in used or self.pair_counts[(first, second)] > 0:
                    continue
                group = [first, second]
                for player_id in player_ids:
                    if len(group) >= self.players_per_race:
                        break
                    if player_id in used or player_id in group:
                        continue
                    if all(self.pair_counts[_pair_key(player_id, member)] == 0 for member in group):
                        group.append(player_id)
                used.update(group)
                self._register_group(group, races_played)
                groups.append(group)
            extra_rounds.append(groups)
            uncovered = [pair for pair, count in self.pair_counts.items() if count == 0]
        return extra_rounds

    def _register_group(self, group: List[str], races_played: Dict[str, int]):
        for first, second in combinations(group, 2):
            self.pair_counts[_pair_key(first, second)] += 1
        for player_id in group:
            races_played[player_id] += 1

    def calculate_matches_per_player(self) -> Dict[str, int]:
        matches = {player_id: 0 for player_id in self.participants}
        for match in self.matches.values():
            for player_id in match.player_ids:
                matches[player_id] += 1
        return matches

    # ---------- Ход турнира ----------

    def get_next_match(self) -> Optional[Match]:
        return self._first_pending()

    def get_advancement_count(self, match: Match) -> int:
        # Все продолжают турнир
        return len(match.player_ids)

    def should_eliminate_player(self, match: Match, player_id: str) -> bool:
        return False

    def counts_as_win(self, match: Match, record: Dict, advancing: bool) -> bool:
        # Победа: верхняя половина заезда, при нечётном размере с округлением вверх
        return record["finish_position"] <= math.ceil(len(match.player_ids) / 2)

    def complete_match(self, match_id: str, race_result: List[Dict]) -> Dict:
        match, outcome = self._settle_match(match_id, race_result)
        self._on_match_completed(match, outcome)
        return outcome

    def _on_match_completed(self, match: Match, outcome: Dict):
        entries = sorted(outcome["winners"] + outcome["losers"], key=lambda record: record["finish_position"])
        win_cutoff = math.ceil(len(entries) / 2)

        for record in entries:
            player_record = self.player_records[record["player_id"]]
            position = record["finish_position"]
            player_record["matches_played"] += 1
            player_record["points"] += record["points"]
            if position <= win_cutoff:
                player_record["wins"] += 1
            else:
                player_record["losses"] += 1
            player_record["total_finish_positions"] += position
            player_record["average_finish_position"] = (
                player_record["total_finish_positions"] / player_record["matches_played"]
            )
            if player_record["best_finish_position"] is None or position < player_record["best_finish_position"]:
                player_record["best_finish_position"] = position
            if player_record["worst_finish_position"] is None or position > player_record["worst_finish_position"]:
                player_record["worst_finish_position"] = position
            if record["finished"] and record["race_time_ms"] is not None:
                player_record["total_race_time"] += record["race_time_ms"]
                player_record["timed_races"] += 1
                player_record["average_race_time"] = player_record["total_race_time"] / player_record["timed_races"]
            player_record["match_history"].append({
                "match_id": match.match_id,
                "round": match.round,
                "finish_position": position,
                "points": record["points"],
                "race_time_ms": record["race_time_ms"],
                "opponents": [other["player_id"] for other in entries if other is not record],
            })

        for ahead, behind in combinations(entries, 2):
            ahead_h2h = self._head_to_head_entry(ahead["player_id"], behind["player_id"])
            behind_h2h = self._head_to_head_entry(behind["player_id"], ahead["player_id"])
            ahead_h2h["wins"] += 1
            behind_h2h["losses"] += 1
            ahead_h2h["points"] += ahead["points"]
            behind_h2h["points"] += behind["points"]
            ahead_h2h["matches"] += 1
            behind_h2h["matches"] += 1

        info = self.rounds[match.round]
        info["completed"] += 1
        outcome["round_completed"] = info["completed"] >= info["total"]
        if outcome["round_completed"]:
            later = [number for number in sorted(self.rounds) if self.rounds[number]["completed"] < self.rounds[number]["total"]]
            self.current_round = later[0] if later else match.round
        outcome["tournament_complete"] = self.is_complete()

    def _head_to_head_entry(self, player_id: str, opponent_id: str) -> Dict:
        return self.player_records[player_id]["head_to_head"].setdefault(
            opponent_id, {"wins": 0, "losses": 0, "points": 0, "matches": 0}
        )

    def is_complete(self) -> bool:
        if not self.rounds:
            return False
        return all(info["completed"] >= info["total"] for info in self.rounds.values())

    # ---------- Таблица ----------

    @staticmethod
    def _win_rate(record: Dict) -> float:
        return record["wins"] / record["matches_played"] if record["matches_played"] else 0.0

    def _compare_records(self, first: Dict, second: Dict) -> int:
        """Порядок: очки, процент побед, средняя позиция, лучшая позиция, личная встреча, среднее время."""
        if first["points"] != second["points"]:
            return -1 if first["points"] > second["points"] else 1
        first_rate, second_rate = self._win_rate(first), self._win_rate(second)
        if first_rate != second_rate:
            return -1 if first_rate > second_rate else 1
        if first["average_finish_position"] != second["average_finish_position"]:
            return -1 if first["average_finish_position"] < second["average_finish_position"] else 1
        first_best = first["best_finish_position"] or math.inf
        second_best = second["best_finish_position"] or math.inf
        if first_best != second_best:
            return -1 if first_best < second_best else 1
        h2h = first["head_to_head"].get(second["player_id"])
        if h2h and h2h["wins"] != h2h["losses"]:
            return -1 if h2h["wins"] > h2h["losses"] else 1
        first_time = first["average_race_time"] if first["average_race_time"] is not None else math.inf
        second_time = second["average_race_time"] if second["average_race_time"] is not None else math.inf
        if first_time != second_time:
            return -1 if first_time < second_time else 1
        return first["seed"] - second["seed"]

    def get_current_standings(self) -> List[Dict]:
        ordered = sorted(self.player_records.values(), key=cmp_to_key(self._compare_records))
        standings = []
        for position, record in enumerate(ordered, start=1):
            entry = self._standing_entry(position, self.participants[record["player_id"]])
            entry.update({
                "points": record["points"],
                "wins": record["wins"],
                "losses": record["losses"],
                "matches_played": record["matches_played"],
                "average_finish_position": record["average_finish_position"],
                "best_finish_position": record["best_finish_position"],
                "average_race_time": record["average_race_time"],
                "win_rate": round(self._win_rate(record) * 100, 1),
                "points_per_match": (
                    round(record["points"] / record["matches_played"], 2) if record["matches_played"] else 0.0
                ),
            })
            standings.append(entry)
        return standings

    def get_final_standings(self) -> List[Dict]:
        return self.get_current_standings()

    def get_head_to_head_record(self, player_id: str, opponent_id: str) -> Optional[Dict]:
        record = self.player_records.get(player_id)
        if record is None or opponent_id not in self.player_records:
            return None
        h2h = record["head_to_head"].get(opponent_id, {"wins": 0, "losses": 0, "points": 0, "matches": 0})
        return {"player_id": player_id, "opponent_id": opponent_id, **h2h}

    def get_player_match_history(self, player_id: str) -> List[Dict]:
        record = self.player_records.get(player_id)
        return list(record["match_history"]) if record else []

    def get_remaining_match_count(self) -> int:
        return sum(info["total"] - info["completed"] for info in self.rounds.values())

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
            "rounds": rounds,
            "min_pairings": self.min_pairings,
            "pair_coverage": {f"{a}|{b}": count for (a, b), count in self.pair_counts.items()},
        }

    # ---------- Проверки ----------

    def _collect_start_errors(self, player_count: int) -> List[str]:
        errors = super()._collect_start_errors(player_count)
        if player_count > self.MAX_PLAYERS:
            errors.append(f"Круговая система поддерживает не больше {self.MAX_PLAYERS} участников")
        estimated = self.estimate_match_count(player_count)
        if estimated > self.MAX_ESTIMATED_MATCHES:
            errors.append(
                f"Слишком много матчей для круговой системы: {estimated} > {self.MAX_ESTIMATED_MATCHES}"
            )
        return errors

    def estimate_match_count(self, player_count: int) -> int:
        size = self.players_per_race
        if player_count < 2:
            return 0
        if size >= player_count:
            return 1
        return math.ceil(player_count * math.ceil((player_count - 1) / (size - 1)) / size)

    def cleanup(self):
        super().cleanup()
        self.player_records.clear()
        self.pair_counts.clear()
        self.rounds.clear()
        self.schedule = []
