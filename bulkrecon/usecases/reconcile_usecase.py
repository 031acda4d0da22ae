from __future__ import annotations

import logging
from dataclasses import dataclass, field

from bulkrecon.domain.filtering.predicates import (
    Predicate,
    PredicateFilter,
    in_groups,
    is_enabled,
    name_matches,
    not_excluded,
    not_in_groups,
    not_template,
)
from bulkrecon.domain.ports.sources import (
    ApplyCallable,
    ComputeTargetCallable,
    DirectoryLookupProtocol,
    EntitySourceProtocol,
)
from bulkrecon.domain.reconciliation.engine import ReconciliationEngine
from bulkrecon.domain.reporting.run_report import RunReport
from bulkrecon.infra.logging.setup import logEvent


@dataclass(frozen=True)
class FilterOptions:
    """
    Назначение:
        Явная конфигурация фильтров одного запуска.
    """

    enabled_only: bool = False
    include_groups: tuple[str, ...] = ()
    exclude_groups: tuple[str, ...] = ()
    exclude_refs: tuple[str, ...] = ()
    name_globs: tuple[str, ...] = ()
    name_field: str = "guest_os"
    exclude_templates: bool = False


def build_predicates(options: FilterOptions, lookup: DirectoryLookupProtocol) -> list[Predicate]:
    """
    Назначение:
        Строит список предикатов. Группы и исключения разрешаются здесь, один раз на запуск.
    Ошибки/исключения:
        FilterResolutionError: неизвестная группа/ссылка исключения.
    """
    predicates: list[Predicate] = []
    if options.enabled_only:
        predicates.append(is_enabled())
    if options.exclude_templates:
        predicates.append(not_template())
    if options.name_globs:
        predicates.append(name_matches(options.name_globs, field=options.name_field))
    if options.include_groups:
        predicates.append(in_groups(lookup, options.include_groups))
    if options.exclude_groups:
        predicates.append(not_in_groups(lookup, options.exclude_groups))
    if options.exclude_refs:
        predicates.append(not_excluded(lookup, options.exclude_refs))
    return predicates


class ReconcileUseCase:
    """
    Назначение/ответственность:
        Оркестрация EntitySource -> PredicateFilter -> ReconciliationEngine.
    Взаимодействия:
        SourceUnavailable/FilterResolutionError пробрасываются наружу до любой мутации;
        CLI превращает их в exit code 2 без отчёта.
    """

    def __init__(
        self,
        source: EntitySourceProtocol,
        lookup: DirectoryLookupProtocol,
        apply: ApplyCallable,
        predicate_filter: PredicateFilter | None = None,
    ):
        self.source = source
        self.lookup = lookup
        self.apply = apply
        self.predicate_filter = predicate_filter or PredicateFilter()

    def run(
        self,
        scope: str,
        compute_target: ComputeTargetCallable,
        options: FilterOptions,
        logger: logging.Logger,
        report: RunReport,
        run_id: str,
        dry_run: bool,
    ) -> int:
        report.set_meta(scope=scope, dry_run=dry_run)

        entities = self.source.list(scope)
        logEvent(logger, logging.INFO, run_id, "source", f"Enumerated {len(entities)} entities in scope {scope}")

        predicates = build_predicates(options, self.lookup)
        selected = self.predicate_filter.apply(entities, predicates)
        logEvent(
            logger,
            logging.INFO,
            run_id,
            "filter",
            f"Selected {len(selected)} of {len(entities)} entities ({len(predicates)} filters)",
        )
        report.set_context("selection", {"enumerated": len(entities), "selected": len(selected)})

        engine = ReconciliationEngine(logger=logger, run_id=run_id, dry_run=dry_run)
        engine.run(selected, compute_target, self.apply, report=report)

        summary = report.summary()
        logEvent(
            logger,
            logging.INFO,
            run_id,
            "reconcile",
            "Reconcile done attempted={attempted} applied={applied} skipped={skipped} failed={failed}".format(**summary),
        )
        return report.exit_code()
