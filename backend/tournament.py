# tournament.py - Жизненный цикл турниров
from typing import Callable, Dict, List, Optional
import asyncio
import random
import sys
import uuid
from datetime import datetime, timedelta
from pathlib import Path

import pytz
from pydantic import ValidationError as SchemaError

from bracket_manager import BracketManager
from config import ManagerSettings
from database import TournamentStateManager
from events import EventBus, TournamentEvent
from logger import setup_logger
from schemas import TournamentConfig, PlayerEntry, RaceResult

# Добавляем путь к shared модулю
sys.path.insert(0, str(Path(__file__).parent.parent / "shared"))

from exceptions import TournamentException, ValidationError, NotFoundError, StateError, PersistenceError

logger = setup_logger()

REGISTRATION = "registration"
ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"


def format_duration(seconds: float) -> str:
    """Длительность в виде 1h 2m 3s."""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def room_code_for(match_id: str) -> str:
    return f"TOURN_{match_id[-8:]}"


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Tournament:
    """Турнир уровня сервиса: регистрация, зрители, ссылка на сетку."""

    def __init__(self,
                 tournament_id: str,
                 creator_id: str,
                 config: TournamentConfig,
                 created_at: datetime):
        self.id = tournament_id
        self.creator_id = creator_id
        self.config = config
        self.status = REGISTRATION
        self.registered_players: List[Dict] = []
        self.spectators: List[str] = []
        self.bracket_manager: Optional[BracketManager] = None
        self.current_matches: List[str] = []
        self.created_at = created_at
        self.registration_deadline = created_at + timedelta(seconds=config.registration_time_limit)
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.duration: Optional[float] = None
        self.winner: Optional[Dict] = None
        self.final_standings: List[Dict] = []
        self.cancel_reason: Optional[str] = None
        self.final_bracket: Optional[Dict] = None
        self.journal: List[Dict] = []
        self.stats = {"matches_played": 0, "total_race_time": 0, "players": {}}

    @property
    def player_count(self) -> int:
        return len(self.registered_players)

    @property
    def is_full(self) -> bool:
        return self.player_count >= self.config.max_players

    def has_player(self, player_id: str) -> bool:
        return any(player["player_id"] == player_id for player in self.registered_players)

    def roster(self) -> List[Dict]:
        """Состав для сетки в порядке регистрации."""
        return [
            {"player_id": p["player_id"], "player_name": p["player_name"], "rating": p.get("rating")}
            for p in self.registered_players
        ]

    def to_snapshot(self) -> Dict:
        """Снимок для хранилища."""
        manager = self.bracket_manager
        summary = manager.get_bracket_summary() if manager else {}
        return {
            "tournament_id": self.id,
            "creator_id": self.creator_id,
            "config": self.config.model_dump(),
            "status": self.status,
            "registered_players": [dict(player) for player in self.registered_players],
            "spectators": list(self.spectators),
            "bracket": manager.get_bracket() if manager else self.final_bracket,
            "journal": manager.journal if manager else list(self.journal),
            "current_round": summary.get("current_round", 0),
            "total_rounds": summary.get("total_rounds", 0),
            "current_matches": list(self.current_matches),
            "stats": self.stats,
            "created_at": _to_iso(self.created_at),
            "started_at": _to_iso(self.started_at),
            "completed_at": _to_iso(self.completed_at),
            "registration_deadline": _to_iso(self.registration_deadline),
            "duration": self.duration,
            "winner": self.winner,
            "final_standings": self.final_standings,
            "cancel_reason": self.cancel_reason,
        }

    @classmethod
    def from_snapshot(cls, data: Dict) -> "Tournament":
        """Восстанавливает турнир из снимка (без сетки)."""
        tournament = cls(
            data["tournament_id"],
            data.get("creator_id"),
            TournamentConfig.model_validate(data["config"]),
            _from_iso(data["created_at"]),
        )
        tournament.status = data["status"]
        tournament.registered_players = [dict(player) for player in data.get("registered_players", [])]
        tournament.spectators = list(data.get("spectators", []))
        tournament.registration_deadline = (
            _from_iso(data.get("registration_deadline")) or tournament.registration_deadline
        )
        tournament.started_at = _from_iso(data.get("started_at"))
        tournament.completed_at = _from_iso(data.get("completed_at"))
        tournament.duration = data.get("duration")
        tournament.winner = data.get("winner")
        tournament.final_standings = data.get("final_standings", [])
        tournament.cancel_reason = data.get("cancel_reason")
        tournament.final_bracket = data.get("bracket")
        tournament.journal = list(data.get("journal", []))
        tournament.stats = data.get("stats") or tournament.stats
        return tournament

    def to_public_dict(self, tz=pytz.UTC) -> Dict:
        """Данные турнира для клиентов."""
        def local(value: Optional[datetime]) -> Optional[str]:
            return value.astimezone(tz).isoformat() if value else None

        manager = self.bracket_manager
        return {
            "tournament_id": self.id,
            "name": self.config.name,
            "format": self.config.format,
            "status": self.status,
            "creator_id": self.creator_id,
            "player_count": self.player_count,
            "max_players": self.config.max_players,
            "min_players": self.config.min_players,
            "players": [
                {"player_id": p["player_id"], "player_name": p["player_name"], "seed": p["seed"]}
                for p in self.registered_players
            ],
            "spectator_count": len(self.spectators),
            "betting_enabled": self.config.betting_enabled,
            "prize_pool": self.config.prize_pool,
            "created_at": local(self.created_at),
            "registration_deadline": local(self.registration_deadline),
            "started_at": local(self.started_at),
            "completed_at": local(self.completed_at),
            "duration": format_duration(self.duration) if self.duration is not None else None,
            "bracket": manager.get_bracket_summary() if manager else None,
            "current_matches": list(self.current_matches),
            "winner": self.winner,
            "final_standings": self.final_standings,
            "cancel_reason": self.cancel_reason,
        }


class TournamentManager:
    """
    Координатор турниров.

    Хранилище, шина событий, настройки и часы передаются снаружи.
    Все переходы одного турнира выполняются под его asyncio.Lock.
    """

    def __init__(self,
                 store: TournamentStateManager,
                 event_bus: EventBus,
                 settings: Optional[ManagerSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.events = event_bus
        self.settings = settings or ManagerSettings()
        self.clock = clock or (lambda: datetime.now(pytz.UTC))
        self.tournaments: Dict[str, Tournament] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._match_index: Dict[str, str] = {}  # match_id -> tournament_id
        self.stats = {
            "tournaments_created": 0,
            "tournaments_completed": 0,
            "tournaments_cancelled": 0,
            "matches_played": 0,
            "players_registered": 0,
        }

    async def initialize(self) -> int:
        """Поднимает хранилище, восстанавливает активные турниры и запускает автосохранение."""
        await self.store.initialize()
        restored = await self.restore_active_tournaments()
        self.store.start_auto_save(self.settings.auto_save_interval)
        logger.info(f"Менеджер турниров запущен, восстановлено турниров: {restored}")
        return restored

    async def shutdown(self):
        for tournament in self.tournaments.values():
            self.store.queue_save(tournament.to_snapshot())
        await self.store.stop_auto_save()
        logger.info("Менеджер турниров остановлен")

    # ---------- Вспомогательные ----------

    def _lock(self, tournament_id: str) -> asyncio.Lock:
        return self._locks.setdefault(tournament_id, asyncio.Lock())

    def _get(self, tournament_id: str) -> Tournament:
        tournament = self.tournaments.get(tournament_id)
        if tournament is None:
            raise NotFoundError(f"Турнир {tournament_id} не найден")
        return tournament

    def _release(self, tournament: Tournament):
        self.tournaments.pop(tournament.id, None)
        self._locks.pop(tournament.id, None)
        for match_id in [m for m, t in self._match_index.items() if t == tournament.id]:
            del self._match_index[match_id]

    async def _persist(self, tournament: Tournament):
        """Сохраняет снимок; при ошибке откладывает запись до автосохранения."""
        snapshot = tournament.to_snapshot()
        try:
            await self.store.save_tournament(snapshot)
        except PersistenceError as e:
            logger.warning(f"Турнир {tournament.id} не сохранён, запись отложена: {e}")
            self.store.queue_save(snapshot)

    async def _emit(self, event: TournamentEvent, tournament: Tournament, **payload):
        data = {"tournament_id": tournament.id, "format": tournament.config.format}
        if tournament.bracket_manager is not None:
            data["bracket"] = tournament.bracket_manager.get_bracket_summary()
        data.update(payload)
        await self.events.emit(event, data)

    # ---------- Создание и регистрация ----------

    async def create_tournament(self, creator_id: str, config: Dict,
                                roster: Optional[List[Dict]] = None) -> Dict:
        """
        Создаёт турнир в статусе регистрации.

        Args:
            creator_id: ID создателя
            config: Конфигурация (см. TournamentConfig)
            roster: Необязательный начальный состав

        Returns:
            Публичные данные турнира

        Raises:
            StateError: Достигнут лимит одновременных турниров
            ValidationError: Некорректная конфигурация
        """
        live = sum(1 for t in self.tournaments.values() if t.status in (REGISTRATION, ACTIVE))
        if live >= self.settings.max_concurrent_tournaments:
            raise StateError(
                f"Достигнут лимит одновременных турниров ({self.settings.max_concurrent_tournaments})"
            )

        try:
            validated = TournamentConfig.model_validate(config)
        except SchemaError as e:
            raise ValidationError(f"Некорректная конфигурация турнира: {e}") from e
        # Заполненный турнир должен запускаться в выбранном формате
        errors = BracketManager.validate_format_config(validated.format, validated.model_dump())
        if errors:
            raise ValidationError(f"Формат не поддерживает такую конфигурацию: {'; '.join(errors)}")
        if validated.rng_seed is None:
            # Сид фиксируется в конфигурации, чтобы журнал можно было повторить
            validated = validated.model_copy(update={"rng_seed": random.randrange(2 ** 32)})

        tournament_id = f"tournament_{uuid.uuid4().hex[:12]}"
        tournament = Tournament(tournament_id, creator_id, validated, self.clock())
        self.tournaments[tournament_id] = tournament
        self.stats["tournaments_created"] += 1

        await self._persist(tournament)
        logger.info(f"Создан турнир {tournament_id} ({validated.format}), создатель {creator_id}")
        await self._emit(TournamentEvent.TOURNAMENT_CREATED, tournament, config=validated.model_dump())

        for player in roster or []:
            await self.register_player(tournament_id, player)

        return tournament.to_public_dict(self.settings.tz)

    def can_player_register(self, tournament_id: str, player_id: str) -> Dict:
        """Проверяет возможность регистрации и перечисляет причины отказа."""
        reasons = []
        tournament = self.tournaments.get(tournament_id)
        if tournament is None:
            reasons.append("Турнир не найден")
        else:
            if tournament.status != REGISTRATION:
                reasons.append("Регистрация закрыта")
            elif self.clock() >= tournament.registration_deadline:
                reasons.append("Срок регистрации истёк")
            if tournament.has_player(player_id):
                reasons.append("Игрок уже зарегистрирован")
            if tournament.is_full:
                reasons.append("Турнир заполнен")
        return {"can_register": not reasons, "reasons": reasons}

    async def register_player(self, tournament_id: str, player: Dict) -> Dict:
        """
        Регистрирует игрока.

        Raises:
            NotFoundError: Турнир не найден
            StateError: Регистрация закрыта или срок истёк
            ValidationError: Игрок уже зарегистрирован или турнир заполнен
        """
        try:
            entry = PlayerEntry.model_validate(player)
        except SchemaError as e:
            raise ValidationError(f"Некорректные данные игрока: {e}") from e

        async with self._lock(tournament_id):
            tournament = self._get(tournament_id)
            if tournament.status != REGISTRATION:
                raise StateError(f"Регистрация в турнир {tournament_id} закрыта")
            if self.clock() >= tournament.registration_deadline:
                await self._maybe_start(tournament)
                raise StateError(f"Срок регистрации в турнир {tournament_id} истёк")
            if tournament.has_player(entry.player_id):
                raise ValidationError(f"Игрок {entry.player_id} уже зарегистрирован")
            if tournament.is_full:
                raise ValidationError(f"Турнир {tournament_id} заполнен")

            record = {
                "player_id": entry.player_id,
                "player_name": entry.player_name or entry.player_id,
                "rating": entry.rating,
                "seed": tournament.player_count + 1,
                "registered_at": self.clock().isoformat(),
            }
            tournament.registered_players.append(record)
            errors = self._start_errors(tournament) if self._should_auto_start(tournament) else []
            if errors:
                tournament.registered_players.pop()
                raise ValidationError(
                    f"Регистрация {entry.player_id} запустила бы турнир {tournament_id}, "
                    f"но сетку построить нельзя: {'; '.join(errors)}"
                )
            self.stats["players_registered"] += 1

            await self._persist(tournament)
            logger.info(f"Игрок {entry.player_id} зарегистрирован в турнир {tournament_id}")
            await self._emit(
                TournamentEvent.TOURNAMENT_PLAYER_REGISTERED, tournament,
                player=dict(record), player_count=tournament.player_count,
                max_players=tournament.config.max_players,
            )
            await self._maybe_start(tournament)
            return tournament.to_public_dict(self.settings.tz)

    async def unregister_player(self, tournament_id: str, player_id: str) -> Dict:
        async with self._lock(tournament_id):
            tournament = self._get(tournament_id)
            if tournament.status != REGISTRATION:
                raise StateError(f"Турнир {tournament_id} уже начался, отмена регистрации невозможна")
            if not tournament.has_player(player_id):
                raise NotFoundError(f"Игрок {player_id} не зарегистрирован в турнире {tournament_id}")

            tournament.registered_players = [
                p for p in tournament.registered_players if p["player_id"] != player_id
            ]
            for seed, record in enumerate(tournament.registered_players, start=1):
                record["seed"] = seed

            await self._persist(tournament)
            logger.info(f"Игрок {player_id} отменил регистрацию в турнире {tournament_id}")
            await self._emit(
                TournamentEvent.TOURNAMENT_PLAYER_UNREGISTERED, tournament,
                player_id=player_id, player_count=tournament.player_count,
            )
            return tournament.to_public_dict(self.settings.tz)

    async def add_spectator(self, tournament_id: str, spectator_id: str) -> bool:
        """Добавляет зрителя. False, если зритель уже добавлен."""
        async with self._lock(tournament_id):
            tournament = self._get(tournament_id)
            if tournament.status not in (REGISTRATION, ACTIVE):
                raise StateError(f"Турнир {tournament_id} уже завершён")
            if spectator_id in tournament.spectators:
                return False
            if len(tournament.spectators) >= tournament.config.spectator_count:
                raise ValidationError(f"В турнире {tournament_id} нет мест для зрителей")

            tournament.spectators.append(spectator_id)
            await self._persist(tournament)
            await self._emit(
                TournamentEvent.TOURNAMENT_SPECTATOR_JOINED, tournament,
                spectator_id=spectator_id, spectator_count=len(tournament.spectators),
            )
            return True

    async def remove_spectator(self, tournament_id: str, spectator_id: str) -> bool:
        async with self._lock(tournament_id):
            tournament = self._get(tournament_id)
            if spectator_id not in tournament.spectators:
                return False
            tournament.spectators.remove(spectator_id)
            await self._persist(tournament)
            return True

    # ---------- Старт ----------

    def _should_auto_start(self, tournament: Tournament) -> bool:
        if tournament.status != REGISTRATION:
            return False
        if tournament.player_count < tournament.config.min_players:
            return False
        return tournament.is_full or self.clock() >= tournament.registration_deadline

    def _start_errors(self, tournament: Tournament) -> List[str]:
        return BracketManager.validate_format_config(
            tournament.config.format, tournament.config.model_dump(), tournament.player_count
        )

    async def _maybe_start(self, tournament: Tournament) -> bool:
        if not self._should_auto_start(tournament):
            return False
        logger.info(f"Турнир {tournament.id}: условия автостарта выполнены")
        await self._start(tournament)
        return True

    async def check_tournament_start(self, tournament_id: str) -> bool:
        """Запускает турнир, если набран минимум и достигнут лимит или срок регистрации."""
        async with self._lock(tournament_id):
            return await self._maybe_start(self._get(tournament_id))

    async def start_tournament(self, tournament_id: str) -> Dict:
        """
        Запускает турнир вручную.

        Raises:
            StateError: Турнир не в статусе регистрации
            ValidationError: Недостаточно участников
        """
        async with self._lock(tournament_id):
            tournament = self._get(tournament_id)
            if tournament.status != REGISTRATION:
                raise StateError(f"Турнир {tournament_id} нельзя начать из статуса {tournament.status}")
            if tournament.player_count < tournament.config.min_players:
                raise ValidationError(
                    f"Недостаточно участников: {tournament.player_count} < {tournament.config.min_players}"
                )
            await self._start(tournament)
            return tournament.to_public_dict(self.settings.tz)

    async def _start(self, tournament: Tournament):
        manager = BracketManager(tournament.id)
        result = manager.create_tournament(tournament.config.model_dump(), tournament.roster())

        tournament.bracket_manager = manager
        tournament.status = ACTIVE
        tournament.started_at = self.clock()

        started = self._start_available_matches(tournament)
        await self._persist(tournament)
        logger.info(
            f"Турнир {tournament.id} начат: {tournament.player_count} игроков, "
            f"раундов {result['total_rounds']}"
        )
        await self._emit(
            TournamentEvent.TOURNAMENT_STARTED, tournament,
            players=tournament.roster(), total_rounds=result["total_rounds"],
        )
        await self._announce_matches(tournament, started)

    # ---------- Матчи ----------

    def _start_available_matches(self, tournament: Tournament) -> List[Dict]:
        """Запускает все ожидающие матчи; bye завершаются сразу и не возвращаются."""
        manager = tournament.bracket_manager
        started = []
        while True:
            match = manager.start_next_match()
            if match is None:
                break
            if match["status"] != "active":
                continue
            code = room_code_for(match["match_id"])
            manager.format.matches[match["match_id"]].room_code = code
            match["room_code"] = code
            self._match_index[match["match_id"]] = tournament.id
            tournament.current_matches.append(match["match_id"])
            started.append(match)
        return started

    async def _announce_matches(self, tournament: Tournament, matches: List[Dict]):
        for match in matches:
            await self._emit(TournamentEvent.TOURNAMENT_MATCH_STARTED, tournament, match=match, round=match["round"])
            await self._emit(
                TournamentEvent.TOURNAMENT_ROOM_REQUESTED, tournament,
                match_id=match["match_id"],
                room_code=match["room_code"],
                round=match["round"],
                players=[p for p in match["players"] if not p["is_bye"]],
                race_time_limit=tournament.config.race_time_limit,
                spectator_limit=tournament.config.spectator_count,
                betting_enabled=tournament.config.betting_enabled,
            )

    async def submit_match_result(self, match_id: str, race_result) -> Dict:
        """
        Принимает результат заезда от гоночного движка.

        Args:
            match_id: ID матча
            race_result: Список записей participant_id, finish_position, race_time_ms

        Returns:
            Итог матча

        Raises:
            NotFoundError: Матч неизвестен, отменён или принадлежит отменённому турниру
            ValidationError: Некорректный результат
        """
        tournament_id = self._match_index.get(match_id)
        if tournament_id is None:
            logger.warning(f"Получен результат для неизвестного матча {match_id}")
            raise NotFoundError(f"Матч {match_id} не активен")

        if not isinstance(race_result, RaceResult):
            try:
                race_result = RaceResult.model_validate({"entries": race_result})
            except SchemaError as e:
                raise ValidationError(f"Некорректный результат заезда: {e}") from e

        async with self._lock(tournament_id):
            tournament = self.tournaments.get(tournament_id)
            if tournament is None or tournament.status != ACTIVE or match_id not in self._match_index:
                logger.warning(f"Результат матча {match_id} отброшен: турнир {tournament_id} не активен")
                raise NotFoundError(f"Матч {match_id} не активен")

            manager = tournament.bracket_manager
            outcome = manager.complete_match(match_id, race_result)

            del self._match_index[match_id]
            tournament.current_matches.remove(match_id)
            tournament.stats["matches_played"] += 1
            self.stats["matches_played"] += 1
            for record in outcome["winners"] + outcome["losers"]:
                if record["finished"] and record["race_time_ms"] is not None:
                    tournament.stats["total_race_time"] += record["race_time_ms"]

            match = manager.get_match(match_id)
            try:
                await self.store.save_match_history(tournament_id, match)
            except PersistenceError as e:
                logger.warning(f"История матча {match_id} не сохранена: {e}")

            if outcome.get("tournament_complete"):
                await self._emit(TournamentEvent.TOURNAMENT_MATCH_COMPLETED, tournament, match=match, outcome=outcome)
                await self._complete(tournament)
                return outcome

            started = self._start_available_matches(tournament)
            await self._persist(tournament)
            await self._emit(TournamentEvent.TOURNAMENT_MATCH_COMPLETED, tournament, match=match, outcome=outcome)
            if outcome.get("round_completed"):
                await self._emit(TournamentEvent.TOURNAMENT_ROUND_COMPLETED, tournament, round=match["round"])
            await self._announce_matches(tournament, started)
            return outcome

    # ---------- Завершение и отмена ----------

    async def complete_tournament(self, tournament_id: str) -> Dict:
        """
        Завершает турнир, чья сетка уже определила победителя.

        Raises:
            StateError: Турнир не активен или сетка не завершена
        """
        async with self._lock(tournament_id):
            tournament = self._get(tournament_id)
            if tournament.status != ACTIVE or not tournament.bracket_manager.is_complete:
                raise StateError(f"Турнир {tournament_id} ещё не может быть завершён")
            return await self._complete(tournament)

    async def _complete(self, tournament: Tournament) -> Dict:
        manager = tournament.bracket_manager
        standings = manager.get_final_standings()
        summary = manager.get_bracket_summary()

        tournament.status = COMPLETED
        tournament.completed_at = self.clock()
        tournament.duration = (tournament.completed_at - tournament.started_at).total_seconds()
        tournament.final_standings = standings
        tournament.winner = standings[0] if standings else None
        tournament.stats["players"] = {
            player["player_id"]: {
                "total_race_time": (manager.get_player_stats(player["player_id"]) or {}).get("total_race_time", 0)
            }
            for player in tournament.registered_players
        }
        tournament.final_bracket = manager.get_bracket()
        tournament.journal = manager.journal
        snapshot = tournament.to_snapshot()

        try:
            await self.store.archive_tournament(snapshot)
            await self.store.update_statistics(snapshot)
        except PersistenceError as e:
            logger.error(f"Не удалось заархивировать турнир {tournament.id}: {e}", exc_info=True)
            self.store.queue_save(snapshot)

        manager.cleanup()
        tournament.bracket_manager = None
        self._release(tournament)
        self.stats["tournaments_completed"] += 1

        logger.info(
            f"Турнир {tournament.id} завершён за {format_duration(tournament.duration)}, "
            f"победитель: {tournament.winner['player_id'] if tournament.winner else None}"
        )
        await self._emit(
            TournamentEvent.TOURNAMENT_COMPLETED, tournament,
            bracket=summary, winner=tournament.winner, final_standings=standings,
            duration=tournament.duration,
        )
        return tournament.to_public_dict(self.settings.tz)

    async def cancel_tournament(self, tournament_id: str, reason: str = "cancelled") -> Dict:
        """
        Отменяет турнир в статусе регистрации или активный.

        Незавершённые матчи помечаются отменёнными, результаты по ним больше не принимаются.
        """
        async with self._lock(tournament_id):
            tournament = self._get(tournament_id)
            if tournament.status not in (REGISTRATION, ACTIVE):
                raise StateError(f"Турнир {tournament_id} нельзя отменить из статуса {tournament.status}")

            manager = tournament.bracket_manager
            summary = None
            if manager is not None:
                cancelled = manager.cancel_open_matches()
                summary = manager.get_bracket_summary()
                tournament.final_bracket = manager.get_bracket()
                tournament.journal = manager.journal
                logger.info(f"Турнир {tournament_id}: отменено матчей: {cancelled}")

            tournament.status = CANCELLED
            tournament.completed_at = self.clock()
            tournament.cancel_reason = reason
            tournament.current_matches = []
            snapshot = tournament.to_snapshot()

            if manager is not None:
                manager.cleanup()
                tournament.bracket_manager = None
            self._release(tournament)
            self.stats["tournaments_cancelled"] += 1

            try:
                await self.store.archive_tournament(snapshot)
            except PersistenceError as e:
                logger.error(f"Не удалось заархивировать турнир {tournament_id}: {e}", exc_info=True)
                self.store.queue_save(snapshot)

            logger.info(f"Турнир {tournament_id} отменён: {reason}")
            await self._emit(TournamentEvent.TOURNAMENT_CANCELLED, tournament, bracket=summary, reason=reason)
            return tournament.to_public_dict(self.settings.tz)

    # ---------- Запросы ----------

    async def get_tournament_public_data(self, tournament_id: str) -> Dict:
        tournament = self.tournaments.get(tournament_id)
        if tournament is not None:
            return tournament.to_public_dict(self.settings.tz)

        archived = await self.store.get_archived_tournament(tournament_id)
        if archived is None:
            raise NotFoundError(f"Турнир {tournament_id} не найден")
        return Tournament.from_snapshot(archived).to_public_dict(self.settings.tz)

    def list_active_tournaments(self) -> List[Dict]:
        return [
            t.to_public_dict(self.settings.tz)
            for t in sorted(self.tournaments.values(), key=lambda t: t.created_at)
            if t.status in (REGISTRATION, ACTIVE)
        ]

    def get_statistics(self) -> Dict:
        statuses = [t.status for t in self.tournaments.values()]
        return {
            **self.stats,
            "registration_tournaments": statuses.count(REGISTRATION),
            "active_tournaments": statuses.count(ACTIVE),
            "live_matches": len(self._match_index),
        }

    # ---------- Восстановление ----------

    async def restore_active_tournaments(self) -> int:
        """
        Восстанавливает турниры из хранилища.

        Активные турниры пересобирают сетку повтором журнала.

        Returns:
            Количество восстановленных турниров
        """
        restored = 0
        for snapshot in await self.store.load_active_tournaments():
            tournament_id = snapshot["tournament_id"]
            if tournament_id in self.tournaments:
                continue
            try:
                tournament = Tournament.from_snapshot(snapshot)
                started = []
                if tournament.status == ACTIVE:
                    manager = BracketManager(tournament_id)
                    manager.restore(tournament.config.model_dump(), tournament.roster(), snapshot["journal"])
                    tournament.bracket_manager = manager
                    tournament.current_matches = []
                    for match in manager.get_active_matches():
                        code = room_code_for(match["match_id"])
                        manager.format.matches[match["match_id"]].room_code = code
                        self._match_index[match["match_id"]] = tournament_id
                        tournament.current_matches.append(match["match_id"])
                    started = self._start_available_matches(tournament)
            except (TournamentException, SchemaError) as e:
                logger.error(f"Не удалось восстановить турнир {tournament_id}: {e}", exc_info=True)
                for match_id in [m for m, t in self._match_index.items() if t == tournament_id]:
                    del self._match_index[match_id]
                continue

            self.tournaments[tournament_id] = tournament
            restored += 1
            logger.info(f"Турнир {tournament_id} восстановлен (статус {tournament.status})")
            if started:
                await self._persist(tournament)
                await self._announce_matches(tournament, started)
        return restored
