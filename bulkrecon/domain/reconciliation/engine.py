from __future__ import annotations

import logging
from typing import Iterable

from bulkrecon.common.sanitize import truncateText
from bulkrecon.domain.error_codes import ErrorCode
from bulkrecon.domain.models import Entity, Outcome
from bulkrecon.domain.ports.sources import ApplyCallable, ComputeTargetCallable
from bulkrecon.domain.reporting.run_report import RunReport
from bulkrecon.errors import AppError
from bulkrecon.infra.logging.setup import logEvent

SKIP_IN_TARGET_STATE = "already_in_target_state"
SKIP_DRY_RUN = "dry_run"


class ReconciliationEngine:
    """
    Назначение/ответственность:
        Последовательно приводит каждую сущность к целевому состоянию.
    Инварианты/гарантии:
        - Ошибка одной сущности не прерывает батч и не влияет на Outcome других.
        - Сущности уже в целевом состоянии получают Skipped без вызова apply.
        - В dry_run apply не вызывается.
    Ограничения:
        Однопоточное выполнение; KeyboardInterrupt не перехватывается.
    """

    def __init__(self, logger: logging.Logger, run_id: str, dry_run: bool = False):
        self.logger = logger
        self.run_id = run_id
        self.dry_run = dry_run

    def run(
        self,
        entities: Iterable[Entity],
        compute_target: ComputeTargetCallable,
        apply: ApplyCallable,
        report: RunReport | None = None,
    ) -> RunReport:
        report = report or RunReport(run_id=self.run_id, command="reconcile")
        for entity in entities:
            outcome, target_text = self._reconcile_one(entity, compute_target, apply)
            report.record(entity, outcome, target=target_text)
        return report

    def _reconcile_one(
        self,
        entity: Entity,
        compute_target: ComputeTargetCallable,
        apply: ApplyCallable,
    ) -> tuple[Outcome, str | None]:
        try:
            target = compute_target(entity)
        except Exception as exc:
            self._log_failure(entity, "compute target", exc)
            return Outcome.failed(ErrorCode.TARGET_FAILED.value, truncateText(str(exc)) or ""), None

        target_text = target.describe()
        if target.is_satisfied_by(entity):
            logEvent(self.logger, logging.DEBUG, self.run_id, "reconcile", f"Skip {entity.name}: already in target state")
            return Outcome.skipped(SKIP_IN_TARGET_STATE), target_text

        if self.dry_run:
            logEvent(self.logger, logging.INFO, self.run_id, "reconcile", f"Dry run {entity.name}: {target_text}")
            return Outcome.skipped(SKIP_DRY_RUN), target_text

        try:
            apply(entity, target)
        except Exception as exc:
            self._log_failure(entity, "apply", exc)
            code = exc.code if isinstance(exc, AppError) else ErrorCode.UNEXPECTED_ERROR.value
            return Outcome.failed(code, truncateText(str(exc)) or ""), target_text

        logEvent(self.logger, logging.INFO, self.run_id, "reconcile", f"Applied {entity.name}: {target_text}")
        return Outcome.applied(), target_text

    def _log_failure(self, entity: Entity, stage: str, exc: Exception) -> None:
        logEvent(
            self.logger,
            logging.ERROR,
            self.run_id,
            "reconcile",
            f"{stage.capitalize()} failed for {entity.name} ({entity.entity_id}): {exc}",
        )
