# bracket_manager.py - Фасад над турнирными форматами
from typing import Dict, List, Optional
import sys
import time
from pathlib import Path

from pydantic import ValidationError as SchemaError

from logger import setup_logger
from schemas import TournamentConfig, RaceResult

# Добавляем путь к shared модулю
sys.path.insert(0, str(Path(__file__).parent.parent / "shared"))

from exceptions import ValidationError
from tournament_format import TournamentFormat, MatchStatus, BracketType
from single_elimination import SingleElimination
from double_elimination import DoubleElimination
from round_robin import RoundRobin

logger = setup_logger()


FORMAT_REGISTRY = {
    SingleElimination.FORMAT_NAME: SingleElimination,
    DoubleElimination.FORMAT_NAME: DoubleElimination,
    RoundRobin.FORMAT_NAME: RoundRobin,
}


class BracketManager:
    """
    Управляет сеткой одного турнира.

    Владеет ровно одним экземпляром формата и предоставляет остальной
    системе единый интерфейс независимо от выбранного формата.
    Пока формат не создан (или уже очищен), методы опроса возвращают
    None или пустую сводку вместо исключения.
    """

    FORMAT_REGISTRY = FORMAT_REGISTRY

    def __init__(self, tournament_id: str):
        self.tournament_id = tournament_id
        self.config: Optional[Dict] = None
        self.format: Optional[TournamentFormat] = None
        self.is_active = False
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.format is not None and self.format.is_complete()

    @property
    def journal(self) -> List[Dict]:
        return list(self.format.journal) if self.format else []

    def create_tournament(self, config: Dict, players: List[Dict]) -> Dict:
        """
        Создаёт сетку турнира.

        Args:
            config: Конфигурация (см. TournamentConfig)
            players: Финальный состав участников

        Returns:
            Параметры созданной сетки

        Raises:
            ValidationError: Некорректная конфигурация или число участников
        """
        if self.is_active:
            raise ValidationError(f"Сетка турнира {self.tournament_id} уже создана")

        try:
            validated = TournamentConfig.model_validate(config)
        except SchemaError as e:
            raise ValidationError(f"Некорректная конфигурация турнира: {e}") from e

        config = validated.model_dump()
        tournament_format = self.FORMAT_REGISTRY[config["format"]](config)
        result = tournament_format.initialize(self.tournament_id, players)
        self.config = config
        self.format = tournament_format

        self.is_active = True
        self.start_time = time.time()
        logger.info(
            f"Сетка турнира {self.tournament_id} создана: формат {self.config['format']}, "
            f"игроков {len(players)}"
        )
        result["first_round_matches"] = self.get_matches_for_round(1)
        return result

    def restore(self, config: Dict, players: List[Dict], journal: List[Dict]) -> Dict:
        """Пересоздаёт сетку и повторяет журнал операций."""
        result = self.create_tournament(config, players)
        self.format.replay(journal)
        return result

    @property
    def legacy_bracket(self) -> List[Dict]:
        """Плоский список матчей: верхняя сетка, нижняя, суперфинал."""
        if self.format is None:
            return []
        bracket = self.format.get_bracket()
        if "rounds" in bracket:
            rounds = bracket["rounds"]
        else:
            rounds = bracket.get("winners", []) + bracket.get("losers", [])
        matches = [match for round_info in rounds for match in round_info["matches"]]
        matches.extend(bracket.get("grand_finals", []))
        return matches

    # ---------- Матчи ----------

    def start_next_match(self) -> Optional[Dict]:
        """
        Запускает следующий доступный матч.

        None, если запускать нечего или кто-то из игроков следующего матча
        ещё участвует в активном заезде.
        """
        if not self.is_active or self.format is None:
            logger.warning(f"Турнир {self.tournament_id}: сетка не активна, матч не запущен")
            return None
        if self.format.is_complete():
            return None

        match = self.format.get_next_match()
        if match is None:
            return None
        busy = {
            player_id
            for active in self.format.get_matches(status=MatchStatus.ACTIVE)
            for player_id in active.player_ids
        }
        if busy.intersection(match.player_ids):
            return None
        return self.format.start_match(match.match_id).to_dict()

    def start_match(self, match_id: str) -> Optional[Dict]:
        if self.format is None:
            return None
        return self.format.start_match(match_id).to_dict()

    def complete_match(self, match_id: str, race_result) -> Optional[Dict]:
        """
        Применяет результат заезда.

        Args:
            match_id: ID матча
            race_result: RaceResult или список словарей participant_id,
                finish_position, race_time_ms

        Returns:
            Итог матча или None, если сетки нет
        """
        if self.format is None:
            logger.warning(f"Турнир {self.tournament_id}: нет сетки для матча {match_id}")
            return None

        entries = race_result.to_engine() if isinstance(race_result, RaceResult) else race_result
        outcome = self.format.complete_match(match_id, entries)
        if outcome.get("tournament_complete"):
            self.is_active = False
            self.end_time = time.time()
            logger.info(f"Сетка турнира {self.tournament_id} завершена")
        return outcome

    def get_match(self, match_id: str) -> Optional[Dict]:
        if self.format is None or match_id not in self.format.matches:
            return None
        return self.format.matches[match_id].to_dict()

    def get_active_matches(self) -> List[Dict]:
        if self.format is None:
            return []
        return [match.to_dict() for match in self.format.get_matches(status=MatchStatus.ACTIVE)]

    def get_matches_for_round(self, round_number: int, bracket: Optional[str] = None) -> List[Dict]:
        if self.format is None:
            return []
        try:
            bracket_type = BracketType(bracket) if bracket else None
        except ValueError:
            raise ValidationError(f"Неизвестный сегмент сетки: {bracket}")
        return [match.to_dict() for match in self.format.get_matches(bracket=bracket_type, round_number=round_number)]

    def cancel_open_matches(self) -> int:
        if self.format is None:
            return 0
        return self.format.cancel_open_matches()

    # ---------- Сводки ----------

    def get_bracket(self) -> Optional[Dict]:
        return self.format.get_bracket() if self.format else None

    def get_bracket_summary(self) -> Dict:
        if self.format is not None:
            summary = self.format.get_bracket_summary()
            summary["config"] = self.format.get_format_config()
            return summary

        return {
            "tournament_id": self.tournament_id,
            "format": self.config["format"] if self.config else "unknown",
            "total_rounds": 0,
            "current_round": 0,
            "total_players": 0,
            "remaining_players": 0,
            "total_matches": 0,
            "completed_matches": 0,
            "active_matches": 0,
            "pending_matches": 0,
        }

    def get_status(self) -> Dict:
        summary = self.format.get_bracket_summary() if self.format else {}
        return {
            "tournament_id": self.tournament_id,
            "format": self.config["format"] if self.config else "unknown",
            "is_active": self.is_active,
            "is_complete": self.is_complete,
            "current_round": summary.get("current_round", 0),
            "max_rounds": summary.get("total_rounds", 0),
            "participant_count": summary.get("total_players", 0),
            "eliminated_count": summary.get("elimination_count", 0),
            "active_matches": summary.get("active_matches", 0),
            "pending_matches": summary.get("pending_matches", 0),
            "completed_matches": summary.get("completed_matches", 0),
            "start_time": self.start_time,
            "duration": (self.end_time or time.time()) - self.start_time if self.start_time else 0,
            "statistics": self.format.get_statistics() if self.format else {},
        }

    def get_player_stats(self, player_id: str) -> Optional[Dict]:
        if self.format is None:
            return None
        return self.format.get_player_stats(player_id)

    def get_current_standings(self) -> List[Dict]:
        if self.format is None:
            return []
        if isinstance(self.format, RoundRobin):
            return self.format.get_current_standings()
        return self.format.get_final_standings()

    def get_final_standings(self) -> List[Dict]:
        if self.format is None:
            return []
        return self.format.get_final_standings()

    def get_head_to_head_record(self, player_id: str, opponent_id: str) -> Optional[Dict]:
        if isinstance(self.format, RoundRobin):
            return self.format.get_head_to_head_record(player_id, opponent_id)
        return None

    # ---------- Форматы ----------

    @classmethod
    def get_available_formats(cls) -> List[Dict]:
        """Метаданные всех зарегистрированных форматов."""
        formats = []
        for key, format_class in cls.FORMAT_REGISTRY.items():
            formats.append({"key": key, **format_class().get_format_config()})
        return formats

    @classmethod
    def validate_format_config(cls, format_name: str, config: Optional[Dict] = None,
                               player_count: Optional[int] = None) -> List[str]:
        """
        Проверяет конфигурацию формата без создания турнира.

        Без player_count проверяется заполненный турнир (max_players).

        Returns:
            Список ошибок (пустой, если всё в порядке)
        """
        format_class = cls.FORMAT_REGISTRY.get(format_name)
        if format_class is None:
            return [f"Неподдерживаемый формат: {format_name}"]

        try:
            validated = TournamentConfig.model_validate(dict(config or {}, format=format_name))
        except SchemaError as e:
            return [error["msg"] for error in e.errors()]

        instance = format_class(validated.model_dump())
        if player_count is None:
            player_count = validated.max_players
        return instance._collect_start_errors(player_count)

    def cleanup(self):
        if self.format is not None:
            self.format.cleanup()
            self.format = None
        self.is_active = False
        logger.debug(f"Сетка турнира {self.tournament_id} очищена")
