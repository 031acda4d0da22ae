from __future__ import annotations

from typing import Any

from bulkrecon.domain.error_codes import ErrorCode
from bulkrecon.errors import AppError


class SourceUnavailable(AppError):
    """
    Назначение:
        Внешняя система недоступна или scope (OU/SKU/папка) не существует.
    Инварианты/гарантии:
        - Фатальная ошибка: прерывает запуск до любой мутации.
    """

    def __init__(self, scope: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            category="source",
            code=ErrorCode.SOURCE_UNAVAILABLE.value,
            message=message,
            retryable=False,
            details={"scope": scope, **(details or {})},
        )
        self.scope = scope


class FilterResolutionError(AppError):
    """
    Назначение:
        Группа или ссылка исключения не может быть разрешена.
    Инварианты/гарантии:
        - Фатальная ошибка: фильтр не должен молча ничего не матчить.
    """

    def __init__(self, reference: str, message: str):
        super().__init__(
            category="filter",
            code=ErrorCode.FILTER_RESOLUTION.value,
            message=message,
            retryable=False,
            details={"reference": reference},
        )
        self.reference = reference


class ApplyFailed(AppError):
    """
    Назначение:
        Ошибка мутации одной сущности. Перехватывается движком и пишется в Outcome.
    """

    def __init__(
        self,
        entity_id: str,
        message: str,
        code: str = ErrorCode.APPLY_FAILED.value,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            category="apply",
            code=code,
            message=message,
            retryable=False,
            details={"entity_id": entity_id, **(details or {})},
        )
        self.entity_id = entity_id


__all__ = ["SourceUnavailable", "FilterResolutionError", "ApplyFailed"]
