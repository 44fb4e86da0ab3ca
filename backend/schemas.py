"""
Pydantic схемы для валидации конфигурации турниров, результатов заездов и снимков состояния.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SUPPORTED_FORMATS = ("single_elimination", "double_elimination", "round_robin")
SNAPSHOT_VERSION = "1.0"


class TournamentConfig(BaseModel):
    """Конфигурация турнира."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field("Tournament", min_length=1, max_length=100)
    format: str = Field(
        "single_elimination",
        pattern="^(single_elimination|double_elimination|round_robin)$",
        description="Формат турнира",
    )
    max_players: int = Field(32, ge=4, le=64)
    min_players: int = Field(4, ge=4, le=64)
    players_per_race: int = Field(6, ge=2, le=6)
    race_time_limit: int = Field(300, ge=60, le=900, description="Лимит заезда, секунды")
    betting_enabled: bool = True
    spectator_count: int = Field(50, ge=0, le=1000)
    registration_time_limit: int = Field(600, ge=0, description="Окно регистрации, секунды")
    prize_pool: int = Field(0, ge=0)
    seeding: str = Field("ranked", pattern="^(random|ranked|balanced)$")
    rng_seed: Optional[int] = None

    @model_validator(mode="after")
    def validate_player_bounds(self):
        """Минимум участников не может превышать максимум."""
        if self.min_players > self.max_players:
            raise ValueError(
                f"min_players ({self.min_players}) больше max_players ({self.max_players})"
            )
        return self


class PlayerEntry(BaseModel):
    """Участник, передаваемый при регистрации."""
    player_id: str = Field(..., min_length=1, max_length=64)
    player_name: Optional[str] = Field(None, max_length=100)
    rating: Optional[float] = None

    @field_validator('player_name')
    @classmethod
    def strip_name(cls, v):
        return v.strip() if v else v


class RaceResultEntry(BaseModel):
    """Строка результата заезда."""
    participant_id: str = Field(..., min_length=1)
    finish_position: int = Field(..., ge=1)
    race_time_ms: Optional[float] = Field(None, ge=0)
    finished: bool = True


class RaceResult(BaseModel):
    """Результат заезда от внешнего гоночного движка."""
    entries: List[RaceResultEntry] = Field(..., min_length=1)

    @field_validator('entries')
    @classmethod
    def validate_unique(cls, v):
        """Участники и позиции в результате не повторяются."""
        ids = [entry.participant_id for entry in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Участник указан в результате несколько раз")
        positions = [entry.finish_position for entry in v]
        if len(positions) != len(set(positions)):
            raise ValueError("Позиция указана в результате несколько раз")
        return v

    def to_engine(self) -> List[Dict]:
        return [entry.model_dump() for entry in self.entries]


class TournamentSnapshot(BaseModel):
    """Сохраняемый снимок турнира."""
    model_config = ConfigDict(extra="ignore")

    version: str = SNAPSHOT_VERSION
    tournament_id: str = Field(..., min_length=1)
    creator_id: Optional[str] = None
    config: Dict
    status: str = Field(..., pattern="^(registration|active|completed|cancelled)$")
    registered_players: List[Dict] = Field(default_factory=list)
    spectators: List[str] = Field(default_factory=list)
    bracket: Optional[Dict] = None
    journal: List[Dict] = Field(default_factory=list)
    current_round: int = 0
    total_rounds: int = 0
    current_matches: List[str] = Field(default_factory=list)
    stats: Dict = Field(default_factory=dict)
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    registration_deadline: Optional[str] = None
    duration: Optional[float] = None
    winner: Optional[Dict] = None
    final_standings: List[Dict] = Field(default_factory=list)
    cancel_reason: Optional[str] = None
    saved_at: Optional[str] = None

    @field_validator('version')
    @classmethod
    def validate_version(cls, v):
        """Принимаем только снимки той же основной версии схемы."""
        if v.split(".")[0] != SNAPSHOT_VERSION.split(".")[0]:
            raise ValueError(f"Неподдерживаемая версия снимка: {v}")
        return v
