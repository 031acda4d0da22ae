from __future__ import annotations

from dataclasses import asdict
from typing import Any

from bulkrecon.common.time import getNowIso
from bulkrecon.domain.models import Entity, Outcome, OutcomeStatus
from bulkrecon.domain.reporting.models import ReportEnvelope, ReportItem, ReportMeta, ReportSummary


class RunReport:
    """
    Назначение/ответственность:
        Append-only сборщик итогов по сущностям для одного запуска.
    Инварианты/гарантии:
        - record() только добавляет; удаления нет.
        - Счётчики summary не зависят от items_limit.
    """

    def __init__(self, run_id: str, command: str, started_at: str | None = None) -> None:
        self.meta = ReportMeta(run_id=run_id, command=command, started_at=started_at or getNowIso())
        self._summary = ReportSummary()
        self._items: list[ReportItem] = []
        self.context: dict[str, Any] = {}

    @property
    def items(self) -> tuple[ReportItem, ...]:
        return tuple(self._items)

    def set_meta(
        self,
        *,
        scope: str | None = None,
        dry_run: bool | None = None,
        items_limit: int | None = None,
    ) -> None:
        if scope is not None:
            self.meta.scope = scope
        if dry_run is not None:
            self.meta.dry_run = dry_run
        if items_limit is not None:
            self.meta.items_limit = items_limit

    def set_context(self, name: str, value: dict[str, Any]) -> None:
        self.context[name] = value

    def record(self, entity: Entity, outcome: Outcome, target: str | None = None) -> None:
        self._summary.attempted += 1
        if outcome.status == OutcomeStatus.APPLIED:
            self._summary.applied += 1
        elif outcome.status == OutcomeStatus.SKIPPED:
            self._summary.skipped += 1
        else:
            self._summary.failed += 1
            code = outcome.error_code or "UNEXPECTED_ERROR"
            self._summary.error_stats[code] = self._summary.error_stats.get(code, 0) + 1

        limit = self.meta.items_limit
        if limit is not None and len(self._items) >= limit:
            self.meta.items_truncated = True
            return
        self._items.append(
            ReportItem(
                entity_id=entity.entity_id,
                name=entity.name,
                status=outcome.status,
                reason=outcome.reason,
                error_code=outcome.error_code,
                error_message=outcome.error_message,
                target=target,
            )
        )

    def summary(self) -> dict[str, int]:
        return {
            "attempted": self._summary.attempted,
            "applied": self._summary.applied,
            "skipped": self._summary.skipped,
            "failed": self._summary.failed,
        }

    def exit_code(self) -> int:
        return 1 if self._summary.failed > 0 else 0

    def finish(self, finished_at: str | None = None, duration_ms: int | None = None) -> None:
        self.meta.finished_at = finished_at or getNowIso()
        self.meta.duration_ms = duration_ms

    def build(self) -> ReportEnvelope:
        return ReportEnvelope(
            status=self._derive_status(),
            meta=self.meta,
            summary=self._summary,
            items=list(self._items),
            context=self.context,
        )

    def _derive_status(self) -> str:
        if self._summary.failed == 0:
            return "SUCCESS"
        if self._summary.applied > 0 or self._summary.skipped > 0:
            return "PARTIAL"
        return "FAILED"


def asdict_report(envelope: ReportEnvelope) -> dict[str, Any]:
    """
    Назначение:
        Сериализация отчёта в JSON-совместимый dict.
    """
    return {
        "status": envelope.status,
        "meta": asdict(envelope.meta),
        "summary": asdict(envelope.summary),
        "items": [
            {
                "entity_id": item.entity_id,
                "name": item.name,
                "status": item.status.value,
                "reason": item.reason,
                "error_code": item.error_code,
                "error_message": item.error_message,
                "target": item.target,
            }
            for item in envelope.items
        ],
        "context": envelope.context,
    }
