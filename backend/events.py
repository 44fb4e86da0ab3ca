"""
События жизненного цикла турнира и шина для их доставки внешним системам.
"""
import inspect
from enum import Enum
from typing import Callable, Dict, List

from logger import setup_logger

logger = setup_logger()


class TournamentEvent(Enum):
    TOURNAMENT_CREATED = "TOURNAMENT_CREATED"
    TOURNAMENT_STARTED = "TOURNAMENT_STARTED"
    TOURNAMENT_COMPLETED = "TOURNAMENT_COMPLETED"
    TOURNAMENT_CANCELLED = "TOURNAMENT_CANCELLED"
    TOURNAMENT_PLAYER_REGISTERED = "TOURNAMENT_PLAYER_REGISTERED"
    TOURNAMENT_PLAYER_UNREGISTERED = "TOURNAMENT_PLAYER_UNREGISTERED"
    TOURNAMENT_SPECTATOR_JOINED = "TOURNAMENT_SPECTATOR_JOINED"
    TOURNAMENT_MATCH_STARTED = "TOURNAMENT_MATCH_STARTED"
    TOURNAMENT_MATCH_COMPLETED = "TOURNAMENT_MATCH_COMPLETED"
    TOURNAMENT_ROUND_COMPLETED = "TOURNAMENT_ROUND_COMPLETED"
    TOURNAMENT_ROOM_REQUESTED = "TOURNAMENT_ROOM_REQUESTED"


class EventBus:
    """
    Шина событий.

    Обработчики могут быть обычными функциями или корутинами. Ошибка в
    обработчике логируется и не прерывает переход состояния турнира.
    """

    def __init__(self):
        self._handlers: Dict[TournamentEvent, List[Callable]] = {}

    def subscribe(self, event: TournamentEvent, handler: Callable):
        """Подписать обработчик на событие."""
        self._handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: TournamentEvent, handler: Callable):
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribe_all(self, handler: Callable):
        """Подписать обработчик на все события."""
        for event in TournamentEvent:
            self.subscribe(event, handler)

    async def emit(self, event: TournamentEvent, payload: Dict):
        """
        Разослать событие всем подписчикам.

        Args:
            event: Тип события
            payload: Данные события
        """
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Ошибка обработчика события {event.value}: {e}", exc_info=True)
