from __future__ import annotations

import logging
from typing import Iterable

from bulkrecon.domain.ports.sources import ComputeTargetCallable, ServicePlanCatalogProtocol
from bulkrecon.domain.reconciliation.targets import disabled_plans_target, map_plan_names
from bulkrecon.domain.reporting.run_report import RunReport
from bulkrecon.infra.logging.setup import logEvent


def buildDisablePlansTarget(
    catalog_source: ServicePlanCatalogProtocol,
    scope: str,
    plans: Iterable[str],
    logger: logging.Logger,
    report: RunReport,
    run_id: str,
) -> ComputeTargetCallable:
    """
    Назначение:
        Переводит запрошенные имена планов в ID каталога SKU и строит compute_target.

    Поведение:
        - Планы, отсутствующие в SKU, не считаются ошибкой: warning + запись в context.ignored_plans.
    """
    catalog = catalog_source.service_plans(scope)
    requested, unknown = map_plan_names(catalog, plans)
    if unknown:
        logEvent(
            logger,
            logging.WARNING,
            run_id,
            "plans",
            f"Service plans not found in SKU {scope}, ignored: {', '.join(unknown)}",
        )
    report.set_context(
        "plans",
        {
            "sku": scope,
            "requested_ids": sorted(requested),
            "ignored_plans": unknown,
        },
    )
    return disabled_plans_target(requested, catalog.values())
