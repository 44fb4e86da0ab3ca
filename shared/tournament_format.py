"""
Базовый контракт турнирного формата.

Содержит общие для всех форматов структуры (участник, матч), фабрику матчей,
обработку «пустых» матчей (bye), стратегии посева и накопление статистики.
Конкретные форматы (олимпийская система, двойное выбывание, круговая система)
наследуются от TournamentFormat и реализуют генерацию сетки и продвижение игроков.
"""
import logging
import math
import random
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Tuple

from exceptions import ValidationError, NotFoundError, StateError

logger = logging.getLogger("tournament_online.engine")


class MatchStatus(Enum):
    """Статусы матча."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchType(Enum):
    """Типы матчей."""
    STANDARD = "standard"
    BYE = "bye"
    GRAND_FINALS = "grand_finals"
    GRAND_FINALS_RESET = "grand_finals_reset"
    ROUND_ROBIN = "round_robin"
    ROUND_ROBIN_ALL = "round_robin_all"


class BracketType(Enum):
    """Сегменты сетки."""
    MAIN = "main"
    WINNERS = "winners"
    LOSERS = "losers"
    GRAND_FINALS = "grand_finals"


class SeedingStrategy(Enum):
    """Стратегии посева."""
    RANDOM = "random"  # Случайное перемешивание
    RANKED = "ranked"  # По рейтингу, по убыванию
    BALANCED = "balanced"  # Чередование сильных и слабых


DEFAULT_FORMAT_CONFIG = {
    "max_players": 64,
    "min_players": 2,
    "race_time_limit": 300,
    "players_per_race": 6,
    "seeding": SeedingStrategy.RANKED.value,
    "rng_seed": None,
}

# Время на подготовку матча и обработку результатов, секунды
MATCH_BUFFER_TIME = 60


def next_power_of_two(value: int) -> int:
    """Возвращает ближайшую степень двойки, не меньшую value."""
    size = 1
    while size < value:
        size *= 2
    return size


def chunk(items: List, size: int) -> List[List]:
    """Режет список на группы по size элементов (последняя может быть короче)."""
    return [items[i:i + size] for i in range(0, len(items), size)]


def simulate_elimination_rounds(player_count: int, players_per_race: int) -> List[int]:
    """
    Оценивает количество матчей по раундам для выбывания.

    Args:
        player_count: Количество участников
        players_per_race: Игроков в одном заезде

    Returns:
        Список с количеством матчей в каждом раунде
    """
    if player_count < 2:
        return []
    size = next_power_of_two(player_count)
    carried = size - player_count
    current = player_count - carried
    rounds = []
    while True:
        full_groups, tail = divmod(current, players_per_race)
        matches = full_groups + (1 if tail >= 2 else 0)
        advanced = full_groups * math.ceil(players_per_race / 2)
        if tail >= 2:
            advanced += math.ceil(tail / 2)
        elif tail == 1:
            advanced += 1
        rounds.append(matches)
        current = advanced + carried
        carried = 0
        if current <= 1:
            return rounds


def estimate_duration(match_count: int, race_time_limit: int) -> int:
    """Оценка длительности турнира в секундах."""
    return match_count * (race_time_limit + MATCH_BUFFER_TIME)


class Participant:
    """
    Участник турнира.

    Attributes:
        player_id: ID игрока
        player_name: Отображаемое имя
        seed: Текущий посев (меняется при пересеве)
        original_seed: Посев по порядку регистрации, не меняется
        rating: Внешний рейтинг (используется только для посева)
        current_round: Раунд, в котором игрок ожидает следующий матч
        is_eliminated: Флаг выбывания
    """

    def __init__(self, player_id: str, player_name: str, seed: int, rating: Optional[float] = None):
        self.player_id = player_id
        self.player_name = player_name
        self.seed = seed
        self.original_seed = seed
        self.rating = rating
        self.current_round = 1
        self.is_eliminated = False
        self.eliminated_in: Optional[str] = None
        self.eliminated_round: Optional[int] = None
        self.elimination_order: Optional[int] = None
        self.final_finish_position: Optional[int] = None
        self.final_race_time: Optional[float] = None
        self.bye_rounds = 0
        self.wins = 0
        self.losses = 0

    def to_dict(self) -> Dict:
        """Конвертировать участника в словарь."""
        return {
            "player_id": self.player_id,
            "player_name": self.player_name,
            "seed": self.seed,
            "original_seed": self.original_seed,
            "rating": self.rating,
            "current_round": self.current_round,
            "is_eliminated": self.is_eliminated,
            "eliminated_in": self.eliminated_in,
            "eliminated_round": self.eliminated_round,
            "bye_rounds": self.bye_rounds,
            "wins": self.wins,
            "losses": self.losses,
        }


class Match:
    """
    Матч (заезд) турнира.

    Матч, в котором ровно один настоящий участник, считается bye и
    завершается без реального заезда.
    """

    def __init__(self,
                 match_id: str,
                 tournament_id: Optional[str],
                 round_number: int,
                 match_type: MatchType,
                 bracket: BracketType,
                 players: List[Dict]):
        self.match_id = match_id
        self.tournament_id = tournament_id
        self.round = round_number
        self.match_type = match_type
        self.bracket = bracket
        self.players = players
        self.status = MatchStatus.PENDING
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.results: Optional[Dict] = None
        self.winner: Optional[str] = None
        self.losers: List[str] = []
        self.room_code: Optional[str] = None
        self.spectators: List[str] = []
        self.created_at = time.time()

    @property
    def player_ids(self) -> List[str]:
        """ID настоящих участников (без заглушек bye)."""
        return [entry["player_id"] for entry in self.players if not entry["is_bye"]]

    @property
    def is_bye(self) -> bool:
        return len(self.players) == 1 or len(self.player_ids) == 1

    @property
    def duration(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> Dict:
        """Конвертировать матч в словарь."""
        return {
            "match_id": self.match_id,
            "tournament_id": self.tournament_id,
            "round": self.round,
            "match_type": self.match_type.value,
            "bracket": self.bracket.value,
            "players": [dict(entry) for entry in self.players],
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "results": self.results,
            "winner": self.winner,
            "losers": list(self.losers),
            "room_code": self.room_code,
            "spectators": list(self.spectators),
            "actual_duration": self.duration,
            "created_at": self.created_at,
        }


class TournamentFormat(ABC):
    """
    Абстрактный турнирный формат.

    Наследники обязаны реализовать initialize, generate_bracket, get_next_match,
    complete_match, is_complete, get_final_standings и _on_match_completed.
    Всё остальное (участники, матчи, посев, статистика, журнал операций)
    общее для всех форматов.
    """

    FORMAT_NAME = "base"
    DISPLAY_NAME = "Base Format"
    DESCRIPTION = ""
    FEATURES: List[str] = []
    COMPLEXITY = "simple"
    OPTIMAL_PLAYER_COUNTS: List[int] = []

    def __init__(self, config: Optional[Dict] = None):
        """
        Инициализирует формат.

        Args:
            config: Конфигурация турнира (players_per_race, min_players, max_players,
                race_time_limit, seeding, rng_seed)
        """
        self.config = dict(DEFAULT_FORMAT_CONFIG)
        if config:
            self.config.update(config)
        self.rng = random.Random(self.config.get("rng_seed"))
        self.tournament_id: Optional[str] = None
        self.participants: Dict[str, Participant] = {}
        self.player_stats: Dict[str, Dict] = {}
        self.matches: Dict[str, Match] = {}
        self.match_order: List[str] = []
        self.journal: List[Dict] = []
        self.current_round = 0
        self.max_rounds = 0
        self.statistics = self._empty_statistics()
        self._match_seq = 0
        self._elimination_seq = 0
        self._settled_matches = 0

    @property
    def players_per_race(self) -> int:
        return int(self.config["players_per_race"])

    # ---------- Абстрактный контракт ----------

    @abstractmethod
    def initialize(self, tournament_id: str, players: List[Dict]) -> Dict:
        raise NotImplementedError(f"{type(self).__name__}.initialize() не реализован")

    @abstractmethod
    def generate_bracket(self) -> Dict:
        raise NotImplementedError(f"{type(self).__name__}.generate_bracket() не реализован")

    @abstractmethod
    def get_next_match(self) -> Optional[Match]:
        raise NotImplementedError(f"{type(self).__name__}.get_next_match() не реализован")

    @abstractmethod
    def complete_match(self, match_id: str, race_result: List[Dict]) -> Dict:
        raise NotImplementedError(f"{type(self).__name__}.complete_match() не реализован")

    @abstractmethod
    def is_complete(self) -> bool:
        raise NotImplementedError(f"{type(self).__name__}.is_complete() не реализован")

    @abstractmethod
    def get_final_standings(self) -> List[Dict]:
        raise NotImplementedError(f"{type(self).__name__}.get_final_standings() не реализован")

    @abstractmethod
    def _on_match_completed(self, match: Match, outcome: Dict):
        """Продвижение и выбывание игроков после завершения матча."""
        raise NotImplementedError(f"{type(self).__name__}._on_match_completed() не реализован")

    # ---------- Участники и посев ----------

    def initialize_participants(self, players: List[Dict]):
        """
        Сбрасывает всё состояние и регистрирует участников.

        Посев назначается в порядке входного списка.

        Args:
            players: Список словарей с ключами player_id, player_name и
                необязательным rating

        Raises:
            ValidationError: Если список пуст или содержит повторы
        """
        if not players:
            raise ValidationError("Список участников пуст")

        self.rng = random.Random(self.config.get("rng_seed"))
        self.participants = {}
        self.player_stats = {}
        self.matches = {}
        self.match_order = []
        self.journal = []
        self.statistics = self._empty_statistics()
        self._match_seq = 0
        self._elimination_seq = 0
        self._settled_matches = 0

        for index, player in enumerate(players, start=1):
            player_id = player.get("player_id")
            if not player_id:
                raise ValidationError(f"У участника #{index} нет player_id")
            if player_id in self.participants:
                raise ValidationError(f"Участник {player_id} указан дважды")
            self.participants[player_id] = Participant(
                player_id,
                player.get("player_name") or player_id,
                index,
                player.get("rating"),
            )
            self.player_stats[player_id] = self._empty_player_stats()

        logger.debug(f"Зарегистрировано участников: {len(self.participants)}")

    def apply_seeding(self, strategy: Optional[str] = None) -> List[Participant]:
        """
        Упорядочивает участников по выбранной стратегии и переназначает seed.

        Args:
            strategy: random, ranked или balanced (по умолчанию из конфигурации)

        Returns:
            Участники в порядке посева
        """
        try:
            seeding = SeedingStrategy(strategy or self.config["seeding"])
        except ValueError:
            raise ValidationError(f"Неизвестная стратегия посева: {strategy or self.config['seeding']}")

        ordered = sorted(self.participants.values(), key=lambda p: p.original_seed)
        if seeding == SeedingStrategy.RANDOM:
            self.rng.shuffle(ordered)
        else:
            # Участники без рейтинга сохраняют порядок регистрации
            ordered.sort(key=lambda p: (0, -p.rating) if p.rating is not None else (1, 0))
            if seeding == SeedingStrategy.BALANCED:
                ordered = self._balance(ordered)

        for seed, participant in enumerate(ordered, start=1):
            participant.seed = seed
        return ordered

    @staticmethod
    def _balance(ordered: List[Participant]) -> List[Participant]:
        balanced = []
        low, high = 0, len(ordered) - 1
        while low <= high:
            balanced.append(ordered[low])
            if low != high:
                balanced.append(ordered[high])
            low += 1
            high -= 1
        return balanced

    # ---------- Матчи ----------

    def create_match(self,
                     round_number: int,
                     players: List[Optional[Participant]],
                     match_type: MatchType = MatchType.STANDARD,
                     bracket: BracketType = BracketType.MAIN) -> Match:
        """
        Создаёт матч и регистрирует его в статусе pending.

        Args:
            round_number: Номер раунда
            players: Участники; None означает заглушку bye
            match_type: Тип матча
            bracket: Сегмент сетки

        Returns:
            Созданный матч
        """
        self._match_seq += 1
        suffix = f"{self._match_seq:03d}{self.rng.getrandbits(16):04x}"
        match_id = f"{self.tournament_id}_{bracket.value}_r{round_number}_{match_type.value}_{suffix}"

        entries = []
        for participant in players:
            if participant is None:
                entries.append({
                    "player_id": None,
                    "player_name": "BYE",
                    "seed": None,
                    "is_eliminated": False,
                    "is_bye": True,
                })
            else:
                entries.append({
                    "player_id": participant.player_id,
                    "player_name": participant.player_name,
                    "seed": participant.seed,
                    "is_eliminated": participant.is_eliminated,
                    "is_bye": False,
                })

        match = Match(match_id, self.tournament_id, round_number, match_type, bracket, entries)
        self.matches[match_id] = match
        self.match_order.append(match_id)
        self.statistics["total_matches"] += 1
        return match

    def is_match_bye(self, match: Match) -> bool:
        return match.is_bye

    def start_match(self, match_id: str) -> Match:
        """
        Запускает матч.

        Матч bye завершается сразу, минуя статус active.

        Raises:
            NotFoundError: Если матч не найден среди ожидающих
        """
        match = self.matches.get(match_id)
        if match is None or match.status != MatchStatus.PENDING:
            raise NotFoundError(f"Матч {match_id} не найден среди ожидающих")

        self.journal.append({"op": "start", "match_id": match_id})

        if self.is_match_bye(match):
            outcome = self.complete_bye(match)
            self._on_match_completed(match, outcome)
            return match

        match.status = MatchStatus.ACTIVE
        match.start_time = time.time()
        logger.info(f"Матч {match_id} начат (раунд {match.round}, игроков: {len(match.player_ids)})")
        return match

    def complete_bye(self, match: Match) -> Dict:
        """Завершает матч bye: единственный участник побеждает без заезда."""
        winner_id = match.player_ids[0]
        participant = self.participants[winner_id]
        now = time.time()

        outcome = {
            "match_id": match.match_id,
            "round": match.round,
            "bracket": match.bracket.value,
            "match_type": match.match_type.value,
            "is_bye": True,
            "winners": [{
                "player_id": winner_id,
                "player_name": participant.player_name,
                "finish_position": 1,
                "race_time_ms": None,
                "points": 0,
                "finished": False,
            }],
            "losers": [],
            "race_stats": {
                "duration": 0,
                "map": "bye",
                "total_players": 1,
                "average_time": None,
                "fastest_time": None,
            },
        }

        match.status = MatchStatus.COMPLETED
        match.start_time = now
        match.end_time = now
        match.winner = winner_id
        match.losers = []
        match.results = outcome

        participant.bye_rounds += 1
        self.statistics["bye_count"] += 1
        self.statistics["completed_matches"] += 1
        logger.debug(f"Матч {match.match_id} завершён как bye для {winner_id}")
        return outcome

    def record_bye(self, player_id: str, to_round: int):
        """Учитывает автоматический проход игрока в раунд to_round без матча."""
        participant = self.participants[player_id]
        participant.bye_rounds += 1
        self.statistics["bye_count"] += 1
        self.player_stats[player_id]["advancement_history"].append({"round": to_round, "via": "bye"})

    def _settle_match(self, match_id: str, race_result: List[Dict]) -> Tuple[Match, Dict]:
        """
        Проверяет результат и закрывает активный матч.

        Ничего не меняет, если матч не активен или результат некорректен.
        """
        match = self.matches.get(match_id)
        if match is None:
            raise NotFoundError(f"Матч {match_id} не найден")
        if match.status == MatchStatus.COMPLETED:
            raise StateError(f"Матч {match_id} уже завершён")
        if match.status != MatchStatus.ACTIVE:
            raise NotFoundError(f"Матч {match_id} не активен (статус {match.status.value})")

        entries = self._normalize_results(match, race_result)
        self._check_match_consistency(match)

        self.journal.append({"op": "complete", "match_id": match_id, "results": entries})

        match.end_time = time.time()
        outcome = self.process_match_results(match, entries)
        duration = match.duration or 0
        outcome["race_stats"]["duration"] = duration

        match.status = MatchStatus.COMPLETED
        match.results = outcome
        match.winner = outcome["winners"][0]["player_id"] if outcome["winners"] else None
        match.losers = [record["player_id"] for record in outcome["losers"]]

        total_duration = self.statistics["average_match_duration"] * self._settled_matches + duration
        self._settled_matches += 1
        self.statistics["completed_matches"] += 1
        self.statistics["average_match_duration"] = total_duration / self._settled_matches

        logger.info(f"Матч {match_id} завершён, победитель: {match.winner}")
        return match, outcome

    def _normalize_results(self, match: Match, race_result: List[Dict]) -> List[Dict]:
        """
        Проверяет результат заезда и приводит его к единому виду.

        Игроки матча, отсутствующие в результате, добавляются в конец как
        не финишировавшие, в порядке посева. Позиции перенумеровываются 1..N.

        Raises:
            ValidationError: Неизвестный или повторный участник, некорректная позиция
        """
        if not race_result:
            raise ValidationError(f"Пустой результат для матча {match.match_id}")

        expected = set(match.player_ids)
        seen_ids = set()
        seen_positions = set()
        entries = []
        for raw in race_result:
            participant_id = raw.get("participant_id")
            position = raw.get("finish_position")
            race_time = raw.get("race_time_ms")
            if participant_id not in expected:
                raise ValidationError(f"Игрок {participant_id} не участвует в матче {match.match_id}")
            if participant_id in seen_ids:
                raise ValidationError(f"Игрок {participant_id} указан в результате дважды")
            if not isinstance(position, int) or isinstance(position, bool) or position < 1:
                raise ValidationError(f"Некорректная позиция {position!r} у игрока {participant_id}")
            if position in seen_positions:
                raise ValidationError(f"Позиция {position} указана дважды")
            if race_time is not None and race_time < 0:
                raise ValidationError(f"Отрицательное время заезда у игрока {participant_id}")
            seen_ids.add(participant_id)
            seen_positions.add(position)
            entries.append({
                "participant_id": participant_id,
                "finish_position": position,
                "race_time_ms": race_time,
                "finished": raw.get("finished", True),
            })

        entries.sort(key=lambda entry: entry["finish_position"])
        missing = sorted(expected - seen_ids, key=lambda pid: self.participants[pid].seed)
        for participant_id in missing:
            entries.append({
                "participant_id": participant_id,
                "finish_position": 0,
                "race_time_ms": None,
                "finished": False,
            })
        for position, entry in enumerate(entries, start=1):
            entry["finish_position"] = position
        return entries

    def _check_match_consistency(self, match: Match):
        """Проверка согласованности состояния перед применением результата."""
        for player_id in match.player_ids:
            if self.participants[player_id].is_eliminated:
                raise StateError(f"Игрок {player_id} уже выбыл, но участвует в матче {match.match_id}")

    def process_match_results(self, match: Match, entries: List[Dict]) -> Dict:
        """
        Делит финишировавших на проходящих дальше и проигравших, начисляет очки.

        Очки: max(1, N - позиция + 1), где N - число участников заезда.

        Args:
            match: Матч
            entries: Нормализованный результат, отсортированный по позиции

        Returns:
            Словарь с winners, losers и race_stats
        """
        ordered = sorted(entries, key=lambda entry: entry["finish_position"])
        total = len(ordered)
        advance = self.get_advancement_count(match)

        winners, losers = [], []
        for index, entry in enumerate(ordered):
            player_id = entry["participant_id"]
            record = {
                "player_id": player_id,
                "player_name": self.participants[player_id].player_name,
                "finish_position": entry["finish_position"],
                "race_time_ms": entry["race_time_ms"],
                "points": self.calculate_points(entry["finish_position"], total),
                "finished": entry["finished"],
            }
            advancing = index < advance
            if advancing:
                winners.append(record)
            else:
                record["eliminated"] = self.should_eliminate_player(match, player_id)
                losers.append(record)
            self._update_player_stats(player_id, record, self.counts_as_win(match, record, advancing))

        times = [record["race_time_ms"] for record in winners + losers
                 if record["finished"] and record["race_time_ms"] is not None]
        return {
            "match_id": match.match_id,
            "round": match.round,
            "bracket": match.bracket.value,
            "match_type": match.match_type.value,
            "is_bye": False,
            "winners": winners,
            "losers": losers,
            "race_stats": {
                "duration": 0,
                "total_players": total,
                "average_time": sum(times) / len(times) if times else None,
                "fastest_time": min(times) if times else None,
            },
        }

    def _update_player_stats(self, player_id: str, record: Dict, won: bool):
        stats = self.player_stats[player_id]
        participant = self.participants[player_id]
        position = record["finish_position"]

        stats["matches_played"] += 1
        if won:
            stats["matches_won"] += 1
            participant.wins += 1
        else:
            stats["matches_lost"] += 1
            participant.losses += 1

        stats["total_finish_positions"] += position
        stats["average_finish_position"] = stats["total_finish_positions"] / stats["matches_played"]
        if stats["best_finish_position"] is None or position < stats["best_finish_position"]:
            stats["best_finish_position"] = position
        if stats["worst_finish_position"] is None or position > stats["worst_finish_position"]:
            stats["worst_finish_position"] = position
        if record["race_time_ms"] is not None and record["finished"]:
            stats["total_race_time"] += record["race_time_ms"]
            stats["timed_races"] += 1
            self.statistics["total_race_time"] += record["race_time_ms"]
        stats["total_points"] += record["points"]

    @staticmethod
    def calculate_points(position: int, total_players: int) -> int:
        return max(1, total_players - position + 1)

    def get_advancement_count(self, match: Match) -> int:
        """Сколько финишировавших проходит дальше (по умолчанию половина, с округлением вверх)."""
        return math.ceil(len(match.player_ids) / 2)

    def should_eliminate_player(self, match: Match, player_id: str) -> bool:
        return True

    def counts_as_win(self, match: Match, record: Dict, advancing: bool) -> bool:
        return advancing

    def eliminate_participant(self, player_id: str, location: str, round_number: int,
                              record: Optional[Dict] = None):
        """
        Помечает участника выбывшим.

        Args:
            player_id: ID игрока
            location: Где выбыл (round_2, losers_round_3, grand_finals...)
            round_number: Номер раунда выбывания
            record: Запись результата из матча, на котором игрок выбыл
        """
        participant = self.participants[player_id]
        self._elimination_seq += 1
        participant.is_eliminated = True
        participant.eliminated_in = location
        participant.eliminated_round = round_number
        participant.elimination_order = self._elimination_seq
        if record is not None:
            participant.final_finish_position = record["finish_position"]
            participant.final_race_time = record["race_time_ms"]
        self.player_stats[player_id]["eliminated_in"] = location
        self.statistics["elimination_count"] += 1
        logger.debug(f"Игрок {player_id} выбыл ({location})")

    def cancel_open_matches(self) -> int:
        """Помечает все незавершённые матчи отменёнными. Возвращает их количество."""
        cancelled = 0
        for match in self.matches.values():
            if match.status in (MatchStatus.PENDING, MatchStatus.ACTIVE):
                match.status = MatchStatus.CANCELLED
                cancelled += 1
        return cancelled

    def replay(self, journal: List[Dict]):
        """
        Повторяет журнал операций на свежеинициализированном формате.

        При том же составе и rng_seed восстанавливаются те же ID матчей и то же состояние.
        """
        for entry in journal:
            if entry["op"] == "start":
                self.start_match(entry["match_id"])
            elif entry["op"] == "complete":
                self.complete_match(entry["match_id"], entry["results"])
            else:
                raise ValidationError(f"Неизвестная операция журнала: {entry['op']}")
        logger.info(f"Турнир {self.tournament_id}: восстановлено операций из журнала: {len(journal)}")

    # ---------- Выборки и сводки ----------

    def get_matches(self,
                    status: Optional[MatchStatus] = None,
                    bracket: Optional[BracketType] = None,
                    round_number: Optional[int] = None) -> List[Match]:
        """Матчи в порядке создания с необязательной фильтрацией."""
        result = []
        for match_id in self.match_order:
            match = self.matches[match_id]
            if status is not None and match.status != status:
                continue
            if bracket is not None and match.bracket != bracket:
                continue
            if round_number is not None and match.round != round_number:
                continue
            result.append(match)
        return result

    def _first_pending(self, bracket: Optional[BracketType] = None) -> Optional[Match]:
        pending = self.get_matches(status=MatchStatus.PENDING, bracket=bracket)
        return pending[0] if pending else None

    def get_total_rounds(self) -> int:
        return max(self.max_rounds, self.current_round)

    def get_bracket(self) -> Dict:
        """Структура сетки: раунды с матчами."""
        rounds: Dict[int, List[Dict]] = {}
        for match in self.get_matches():
            rounds.setdefault(match.round, []).append(match.to_dict())
        return {
            "rounds": [{"round": number, "matches": rounds[number]} for number in sorted(rounds)],
        }

    def get_bracket_summary(self) -> Dict:
        """Сводка по сетке. Только чтение, повторный вызов возвращает те же значения."""
        counts = {status: 0 for status in MatchStatus}
        for match in self.matches.values():
            counts[match.status] += 1
        return {
            "tournament_id": self.tournament_id,
            "format": self.FORMAT_NAME,
            "total_rounds": self.get_total_rounds(),
            "current_round": self.current_round,
            "total_players": len(self.participants),
            "remaining_players": sum(1 for p in self.participants.values() if not p.is_eliminated),
            "total_matches": self.statistics["total_matches"],
            "completed_matches": counts[MatchStatus.COMPLETED],
            "active_matches": counts[MatchStatus.ACTIVE],
            "pending_matches": counts[MatchStatus.PENDING],
            "bye_count": self.statistics["bye_count"],
            "elimination_count": self.statistics["elimination_count"],
        }

    def get_statistics(self) -> Dict:
        statistics = dict(self.statistics)
        total = statistics["total_matches"]
        statistics["completion_percentage"] = (
            round(statistics["completed_matches"] / total * 100, 1) if total else 0.0
        )
        return statistics

    def get_player_stats(self, player_id: str) -> Optional[Dict]:
        """Статистика игрока с процентом побед и средним временем заезда."""
        stats = self.player_stats.get(player_id)
        if stats is None:
            return None
        participant = self.participants[player_id]
        result = dict(stats)
        result["advancement_history"] = list(stats["advancement_history"])
        result["win_rate"] = (
            round(stats["matches_won"] / stats["matches_played"] * 100, 1) if stats["matches_played"] else 0.0
        )
        result["average_race_time"] = (
            stats["total_race_time"] / stats["timed_races"] if stats["timed_races"] else None
        )
        result.update(participant.to_dict())
        return result

    def _standing_entry(self, position: int, participant: Participant) -> Dict:
        stats = self.player_stats[participant.player_id]
        return {
            "position": position,
            "player_id": participant.player_id,
            "player_name": participant.player_name,
            "seed": participant.seed,
            "original_seed": participant.original_seed,
            "eliminated_in": participant.eliminated_in,
            "eliminated_round": participant.eliminated_round,
            "wins": participant.wins,
            "losses": participant.losses,
            "bye_rounds": participant.bye_rounds,
            "matches_played": stats["matches_played"],
            "total_points": stats["total_points"],
        }

    # ---------- Проверки и метаданные ----------

    def _collect_start_errors(self, player_count: int) -> List[str]:
        errors = []
        if player_count < 2:
            errors.append("Для турнира нужно минимум 2 участника")
        if player_count < self.config["min_players"]:
            errors.append(f"Недостаточно участников: {player_count} < {self.config['min_players']}")
        if player_count > self.config["max_players"]:
            errors.append(f"Слишком много участников: {player_count} > {self.config['max_players']}")
        return errors

    def validate_start(self, player_count: int):
        """
        Проверяет, можно ли начать турнир с таким количеством участников.

        Raises:
            ValidationError: Со списком всех нарушений
        """
        errors = self._collect_start_errors(player_count)
        if errors:
            raise ValidationError("; ".join(errors))

    @abstractmethod
    def estimate_match_count(self, player_count: int) -> int:
        raise NotImplementedError(f"{type(self).__name__}.estimate_match_count() не реализован")

    def get_format_config(self) -> Dict:
        """Метаданные формата для отображения."""
        estimated = self.estimate_match_count(self.config["max_players"])
        return {
            "name": self.FORMAT_NAME,
            "display_name": self.DISPLAY_NAME,
            "description": self.DESCRIPTION,
            "features": list(self.FEATURES),
            "complexity": self.COMPLEXITY,
            "optimal_player_counts": list(self.OPTIMAL_PLAYER_COUNTS),
            "player_limits": {
                "min": self.config["min_players"],
                "max": self.config["max_players"],
            },
            "estimated_matches": estimated,
            "estimated_duration": estimate_duration(estimated, self.config["race_time_limit"]),
        }

    def cleanup(self):
        """Освобождает всё состояние формата."""
        self.participants.clear()
        self.player_stats.clear()
        self.matches.clear()
        self.match_order.clear()
        self.journal.clear()
        logger.debug(f"Формат {self.FORMAT_NAME} турнира {self.tournament_id} очищен")

    @staticmethod
    def _empty_statistics() -> Dict:
        return {
            "total_matches": 0,
            "completed_matches": 0,
            "average_match_duration": 0.0,
            "total_race_time": 0,
            "bye_count": 0,
            "elimination_count": 0,
        }

    @staticmethod
    def _empty_player_stats() -> Dict:
        return {
            "matches_played": 0,
            "matches_won": 0,
            "matches_lost": 0,
            "total_race_time": 0,
            "timed_races": 0,
            "total_finish_positions": 0,
            "average_finish_position": 0.0,
            "best_finish_position": None,
            "worst_finish_position": None,
            "total_points": 0,
            "eliminated_in": None,
            "advancement_history": [],
        }
