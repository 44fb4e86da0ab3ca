"""
Хранилище состояния турниров на SQLite.

Снимки активных турниров, архив завершённых, история матчей и
накопительная статистика игроков по всем турнирам.
"""
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite
import pytz
from pydantic import ValidationError as SchemaError

from logger import setup_logger
from schemas import TournamentSnapshot, SNAPSHOT_VERSION

# Добавляем путь к shared модулю
sys.path.insert(0, str(Path(__file__).parent.parent / "shared"))

from exceptions import PersistenceError, ValidationError

logger = setup_logger()

ACTIVE_STATUSES = ("registration", "active")
LEADERBOARD_SORTS = ("tournaments_won", "win_rate", "average_finish", "best_finish")


def utc_now() -> str:
    return datetime.now(pytz.UTC).isoformat()


class TournamentStateManager:
    """Класс для сохранения и восстановления состояния турниров."""

    def __init__(self, db_path: str = "tournaments.db"):
        """
        Args:
            db_path: Путь к файлу базы данных
        """
        self.db_path = db_path
        self._initialized = False
        self._cache: Dict[str, Dict] = {}
        self._save_queue: Dict[str, Dict] = {}
        self._auto_save_task: Optional[asyncio.Task] = None

    @asynccontextmanager
    async def _connect(self):
        """Соединение с базой; ошибки SQLite превращаются в PersistenceError."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.Error as e:
            raise PersistenceError(f"Ошибка базы данных {self.db_path}: {e}") from e

    async def initialize(self):
        """Инициализирует базу данных и создаёт таблицы."""
        if self._initialized:
            return

        async with self._connect() as db:
            # Снимки незавершённых турниров
            await db.execute("""
                CREATE TABLE IF NOT EXISTS tournaments (
                    tournament_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    format TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    saved_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS archived_tournaments (
                    tournament_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    format TEXT NOT NULL,
                    data TEXT NOT NULL,
                    completed_at TEXT,
                    archived_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS match_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tournament_id TEXT NOT NULL,
                    match_id TEXT NOT NULL UNIQUE,
                    round INTEGER NOT NULL,
                    bracket TEXT NOT NULL,
                    data TEXT NOT NULL,
                    completed_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS player_statistics (
                    player_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_tournaments_status
                ON tournaments(status)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_archived_format
                ON archived_tournaments(format, archived_at DESC)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_match_history_tournament
                ON match_history(tournament_id, id)
            """)

            await db.commit()
            self._initialized = True
            logger.info("Хранилище турниров инициализировано")

    # ---------- Снимки турниров ----------

    @staticmethod
    def _validate_snapshot(snapshot: Dict) -> Dict:
        try:
            return TournamentSnapshot.model_validate(snapshot).model_dump()
        except SchemaError as e:
            raise ValidationError(f"Некорректный снимок турнира: {e}") from e

    @staticmethod
    def _decode(raw: str, tournament_id: str) -> Dict:
        try:
            data = json.loads(raw)
            return TournamentSnapshot.model_validate(data).model_dump()
        except (json.JSONDecodeError, SchemaError) as e:
            raise PersistenceError(f"Повреждённый снимок турнира {tournament_id}: {e}") from e

    async def save_tournament(self, snapshot: Dict) -> Dict:
        """
        Сохраняет снимок турнира.

        Args:
            snapshot: Снимок (см. TournamentSnapshot)

        Returns:
            Сохранённый снимок с отметкой saved_at
        """
        data = self._validate_snapshot(snapshot)
        data["saved_at"] = utc_now()
        data["version"] = SNAPSHOT_VERSION

        async with self._connect() as db:
            await db.execute("""
                INSERT OR REPLACE INTO tournaments
                (tournament_id, status, format, data, created_at, saved_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                data["tournament_id"],
                data["status"],
                data["config"].get("format", "unknown"),
                json.dumps(data),
                data["created_at"],
                data["saved_at"],
            ))
            await db.commit()

        self._cache[data["tournament_id"]] = data
        self._save_queue.pop(data["tournament_id"], None)
        logger.debug(f"Турнир {data['tournament_id']} сохранён (статус {data['status']})")
        return data

    async def load_tournament(self, tournament_id: str) -> Optional[Dict]:
        """Загружает снимок турнира (сначала из кэша)."""
        if tournament_id in self._cache:
            return self._cache[tournament_id]

        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT data FROM tournaments WHERE tournament_id = ?",
                (tournament_id,)
            )
            row = await cursor.fetchone()

        if not row:
            return None
        data = self._decode(row["data"], tournament_id)
        self._cache[tournament_id] = data
        return data

    async def load_active_tournaments(self) -> List[Dict]:
        """Загружает все турниры в статусе registration или active."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT tournament_id, data FROM tournaments WHERE status IN (?, ?) ORDER BY created_at, rowid",
                ACTIVE_STATUSES
            )
            rows = await cursor.fetchall()

        snapshots = []
        for row in rows:
            data = self._decode(row["data"], row["tournament_id"])
            self._cache[row["tournament_id"]] = data
            snapshots.append(data)
        logger.info(f"Загружено активных турниров: {len(snapshots)}")
        return snapshots

    async def delete_tournament(self, tournament_id: str):
        async with self._connect() as db:
            await db.execute("DELETE FROM tournaments WHERE tournament_id = ?", (tournament_id,))
            await db.commit()
        self._cache.pop(tournament_id, None)
        self._save_queue.pop(tournament_id, None)

    # ---------- Архив ----------

    async def archive_tournament(self, snapshot: Dict) -> Dict:
        """
        Переносит турнир в архив и удаляет его из активных.

        Args:
            snapshot: Финальный снимок (completed или cancelled)

        Returns:
            Архивная запись
        """
        data = self._validate_snapshot(snapshot)
        data["archived_at"] = utc_now()
        data["archive_version"] = SNAPSHOT_VERSION

        async with self._connect() as db:
            await db.execute("""
                INSERT OR REPLACE INTO archived_tournaments
                (tournament_id, status, format, data, completed_at, archived_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                data["tournament_id"],
                data["status"],
                data["config"].get("format", "unknown"),
                json.dumps(data),
                data.get("completed_at"),
                data["archived_at"],
            ))
            await db.execute("DELETE FROM tournaments WHERE tournament_id = ?", (data["tournament_id"],))
            await db.commit()

        self._cache.pop(data["tournament_id"], None)
        self._save_queue.pop(data["tournament_id"], None)
        logger.info(f"Турнир {data['tournament_id']} перенесён в архив")
        return data

    async def get_archived_tournament(self, tournament_id: str) -> Optional[Dict]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT data FROM archived_tournaments WHERE tournament_id = ?",
                (tournament_id,)
            )
            row = await cursor.fetchone()
        if not row:
            return None
        try:
            return json.loads(row["data"])
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Повреждённая архивная запись {tournament_id}: {e}") from e

    async def list_archived_tournaments(self, limit: int = 20, offset: int = 0,
                                        format: Optional[str] = None) -> List[Dict]:
        """
        Список архивных турниров, новые первыми.

        Args:
            limit: Максимальное количество записей
            offset: Смещение
            format: Фильтр по формату

        Returns:
            Краткие сведения о турнирах
        """
        query = "SELECT data FROM archived_tournaments"
        params: list = []
        if format:
            query += " WHERE format = ?"
            params.append(format)
        query += " ORDER BY archived_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        summaries = []
        for row in rows:
            data = json.loads(row["data"])
            summaries.append({
                "tournament_id": data["tournament_id"],
                "name": data["config"].get("name"),
                "format": data["config"].get("format"),
                "status": data["status"],
                "player_count": len(data.get("registered_players", [])),
                "winner": data.get("winner"),
                "completed_at": data.get("completed_at"),
                "archived_at": data.get("archived_at"),
                "duration": data.get("duration"),
            })
        return summaries

    # ---------- История матчей ----------

    async def save_match_history(self, tournament_id: str, match: Dict):
        """Сохраняет завершённый матч."""
        async with self._connect() as db:
            await db.execute("""
                INSERT OR REPLACE INTO match_history
                (tournament_id, match_id, round, bracket, data, completed_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                tournament_id,
                match["match_id"],
                match["round"],
                match["bracket"],
                json.dumps(match),
                utc_now(),
            ))
            await db.commit()
            logger.debug(f"Матч {match['match_id']} записан в историю")

    async def get_match_history(self, tournament_id: str) -> List[Dict]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT data FROM match_history WHERE tournament_id = ? ORDER BY id",
                (tournament_id,)
            )
            rows = await cursor.fetchall()
        return [json.loads(row["data"]) for row in rows]

    # ---------- Статистика игроков ----------

    @staticmethod
    def _empty_player_statistics(player_id: str, player_name: Optional[str]) -> Dict:
        return {
            "player_id": player_id,
            "player_name": player_name,
            "tournaments_played": 0,
            "tournaments_won": 0,
            "total_matches": 0,
            "matches_won": 0,
            "average_finish_position": 0.0,
            "best_finish": None,
            "total_race_time": 0,
            "format_counts": {},
            "favorite_format": None,
            "last_played": None,
        }

    async def update_statistics(self, snapshot: Dict):
        """
        Обновляет накопительную статистику игроков по итогам завершённого турнира.

        Args:
            snapshot: Финальный снимок с final_standings
        """
        if snapshot.get("status") != "completed":
            return

        tournament_format = snapshot["config"].get("format")
        player_details = snapshot.get("stats", {}).get("players", {})
        played_at = snapshot.get("completed_at") or utc_now()

        async with self._connect() as db:
            for standing in snapshot.get("final_standings", []):
                player_id = standing["player_id"]
                cursor = await db.execute(
                    "SELECT data FROM player_statistics WHERE player_id = ?",
                    (player_id,)
                )
                row = await cursor.fetchone()
                stats = json.loads(row["data"]) if row else self._empty_player_statistics(
                    player_id, standing.get("player_name")
                )

                position = standing["position"]
                played = stats["tournaments_played"]
                stats["average_finish_position"] = (
                    (stats["average_finish_position"] * played + position) / (played + 1)
                )
                stats["tournaments_played"] = played + 1
                if position == 1:
                    stats["tournaments_won"] += 1
                if stats["best_finish"] is None or position < stats["best_finish"]:
                    stats["best_finish"] = position
                stats["total_matches"] += standing.get("matches_played", 0)
                stats["matches_won"] += standing.get("wins", 0)
                stats["total_race_time"] += player_details.get(player_id, {}).get("total_race_time", 0)
                counts = stats["format_counts"]
                counts[tournament_format] = counts.get(tournament_format, 0) + 1
                stats["favorite_format"] = max(counts, key=counts.get)
                stats["last_played"] = played_at
                if standing.get("player_name"):
                    stats["player_name"] = standing["player_name"]

                await db.execute("""
                    INSERT OR REPLACE INTO player_statistics (player_id, data, updated_at)
                    VALUES (?, ?, ?)
                """, (player_id, json.dumps(stats), utc_now()))
            await db.commit()

        logger.info(f"Статистика игроков обновлена по турниру {snapshot['tournament_id']}")

    async def get_player_statistics(self, player_id: str) -> Optional[Dict]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT data FROM player_statistics WHERE player_id = ?",
                (player_id,)
            )
            row = await cursor.fetchone()
        if not row:
            return None
        stats = json.loads(row["data"])
        stats["win_rate"] = self._win_rate(stats)
        return stats

    @staticmethod
    def _win_rate(stats: Dict) -> float:
        if not stats["total_matches"]:
            return 0.0
        return round(stats["matches_won"] / stats["total_matches"] * 100, 1)

    async def get_player_leaderboard(self, sort_by: str = "tournaments_won", limit: int = 10) -> List[Dict]:
        """
        Таблица лучших игроков.

        Args:
            sort_by: tournaments_won, win_rate, average_finish или best_finish
            limit: Количество записей
        """
        if sort_by not in LEADERBOARD_SORTS:
            raise ValidationError(f"Неизвестный критерий сортировки: {sort_by}")

        async with self._connect() as db:
            cursor = await db.execute("SELECT data FROM player_statistics")
            rows = await cursor.fetchall()

        players = []
        for row in rows:
            stats = json.loads(row["data"])
            stats["win_rate"] = self._win_rate(stats)
            players.append(stats)

        if sort_by == "tournaments_won":
            players.sort(key=lambda s: (-s["tournaments_won"], -s["win_rate"]))
        elif sort_by == "win_rate":
            players.sort(key=lambda s: (-s["win_rate"], -s["total_matches"]))
        elif sort_by == "average_finish":
            players.sort(key=lambda s: (s["average_finish_position"], -s["tournaments_played"]))
        else:
            players.sort(key=lambda s: (s["best_finish"] or float("inf"), -s["tournaments_won"]))

        return [dict(stats, rank=rank) for rank, stats in enumerate(players[:limit], start=1)]

    async def get_overall_statistics(self) -> Dict:
        """Сводная статистика по всем турнирам."""
        async with self._connect() as db:
            cursor = await db.execute("SELECT status, format, data FROM archived_tournaments")
            archived = await cursor.fetchall()
            cursor = await db.execute("SELECT COUNT(*) AS total FROM tournaments")
            live = await cursor.fetchone()
            cursor = await db.execute("SELECT COUNT(*) AS total FROM player_statistics")
            players = await cursor.fetchone()
            cursor = await db.execute("SELECT COUNT(*) AS total FROM match_history")
            matches = await cursor.fetchone()

        completed = [row for row in archived if row["status"] == "completed"]
        durations = []
        formats: Dict[str, int] = {}
        for row in completed:
            duration = json.loads(row["data"]).get("duration")
            if duration is not None:
                durations.append(duration)
            formats[row["format"]] = formats.get(row["format"], 0) + 1

        return {
            "total_tournaments": len(archived) + live["total"],
            "active_tournaments": live["total"],
            "completed_tournaments": len(completed),
            "cancelled_tournaments": sum(1 for row in archived if row["status"] == "cancelled"),
            "average_duration": sum(durations) / len(durations) if durations else 0.0,
            "popular_formats": dict(sorted(formats.items(), key=lambda item: -item[1])),
            "total_players": players["total"],
            "total_matches": matches["total"],
        }

    # ---------- Экспорт и импорт ----------

    async def export_data(self) -> Dict:
        """Выгружает всё содержимое хранилища."""
        async with self._connect() as db:
            result = {"version": SNAPSHOT_VERSION, "exported_at": utc_now()}
            for table in ("tournaments", "archived_tournaments", "match_history", "player_statistics"):
                cursor = await db.execute(f"SELECT data FROM {table}")
                rows = await cursor.fetchall()
                result[table] = [json.loads(row["data"]) for row in rows]
        return result

    async def import_data(self, data: Dict):
        """Загружает данные, ранее выгруженные export_data."""
        if data.get("version", "").split(".")[0] != SNAPSHOT_VERSION.split(".")[0]:
            raise ValidationError(f"Неподдерживаемая версия выгрузки: {data.get('version')}")

        for snapshot in data.get("tournaments", []):
            await self.save_tournament(snapshot)
        for snapshot in data.get("archived_tournaments", []):
            await self.archive_tournament(snapshot)
        for match in data.get("match_history", []):
            await self.save_match_history(match["tournament_id"], match)

        async with self._connect() as db:
            for stats in data.get("player_statistics", []):
                await db.execute("""
                    INSERT OR REPLACE INTO player_statistics (player_id, data, updated_at)
                    VALUES (?, ?, ?)
                """, (stats["player_id"], json.dumps(stats), utc_now()))
            await db.commit()
        logger.info("Данные хранилища импортированы")

    async def clear_all_data(self):
        async with self._connect() as db:
            for table in ("tournaments", "archived_tournaments", "match_history", "player_statistics"):
                await db.execute(f"DELETE FROM {table}")
            await db.commit()
        self._cache.clear()
        self._save_queue.clear()
        logger.warning("Все данные хранилища удалены")

    # ---------- Автосохранение ----------

    @property
    def pending_saves(self) -> List[str]:
        return list(self._save_queue)

    def queue_save(self, snapshot: Dict):
        """Помечает снимок для записи при следующем автосохранении."""
        self._save_queue[snapshot["tournament_id"]] = snapshot

    async def flush(self) -> int:
        """
        Записывает все отложенные снимки.

        Неудачные записи остаются в очереди до следующего цикла.

        Returns:
            Количество успешно записанных снимков
        """
        saved = 0
        for tournament_id, snapshot in list(self._save_queue.items()):
            try:
                await self.save_tournament(snapshot)
                saved += 1
            except PersistenceError as e:
                logger.warning(f"Не удалось сохранить турнир {tournament_id}, повторим позже: {e}")
        return saved

    async def _auto_save_loop(self, interval: float):
        """Периодическая запись отложенных снимков."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Ошибка автосохранения: {e}", exc_info=True)

    def start_auto_save(self, interval: float = 30.0):
        if self._auto_save_task is None or self._auto_save_task.done():
            self._auto_save_task = asyncio.get_running_loop().create_task(self._auto_save_loop(interval))
            logger.info(f"Автосохранение запущено, период {interval} с")

    async def stop_auto_save(self):
        if self._auto_save_task is not None:
            self._auto_save_task.cancel()
            try:
                await self._auto_save_task
            except asyncio.CancelledError:
                pass
            self._auto_save_task = None
        await self.flush()
