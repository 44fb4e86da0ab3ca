"""
Кастомные исключения для турнирного движка.
"""


class TournamentException(Exception):
    """Базовое исключение для всех ошибок турнирного движка."""
    pass


class ValidationError(TournamentException):
    """Некорректная конфигурация, состав участников или результат заезда."""
    pass


class NotFoundError(TournamentException):
    """Турнир или матч не найден, либо матч не в ожидаемом статусе."""
    pass


class StateError(TournamentException):
    """Операция недопустима для текущего состояния турнира или матча."""
    pass


class PersistenceError(TournamentException):
    """Ошибка чтения или записи хранилища состояния."""
    pass
