from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from bulkrecon.domain.models import OutcomeStatus


@dataclass
class ReportMeta:
    """
    Назначение:
        Метаданные запуска команды.
    """

    run_id: str
    command: str
    started_at: str
    scope: str | None = None
    dry_run: bool = False
    finished_at: str | None = None
    duration_ms: int | None = None
    items_limit: int | None = None
    items_truncated: bool = False


@dataclass
class ReportSummary:
    attempted: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    error_stats: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ReportItem:
    """
    Назначение:
        Запись отчёта по конкретной сущности.
    """

    entity_id: str
    name: str
    status: OutcomeStatus
    reason: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    target: str | None = None


@dataclass
class ReportEnvelope:
    status: str
    meta: ReportMeta
    summary: ReportSummary
    items: list[ReportItem]
    context: dict[str, Any] = field(default_factory=dict)
