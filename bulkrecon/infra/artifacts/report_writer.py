from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any

from bulkrecon.domain.reporting.run_report import RunReport, asdict_report

OUTCOME_CSV_FIELDS = ["entity_id", "name", "status", "reason", "error_code", "error_message", "target"]


def createEmptyReport(runId: str, command: str, configSources: list[str]) -> RunReport:
    """
    Назначение:
        Создаёт пустой отчёт-скелет.
    """
    report = RunReport(run_id=runId, command=command)
    if configSources:
        report.set_context("config", {"sources": configSources})
    return report


def finalizeReport(report: RunReport, durationMs: int, logFile: str | None, reportDir: str) -> None:
    """
    Назначение:
        Финализирует отчёт: время завершения, длительность, пути.
    """
    report.set_context("runtime", {"log_file": logFile, "report_dir": reportDir})
    report.finish(duration_ms=durationMs)


def writeReportJson(report: RunReport, reportDir: str, fileBaseName: str) -> str:
    """
    Назначение:
        Записывает report.json на диск.

    Выходные данные:
        str
            Путь к файлу отчёта.
    """
    Path(reportDir).mkdir(parents=True, exist_ok=True)
    reportPath = str(Path(reportDir) / f"{fileBaseName}.json")

    data: dict[str, Any] = asdict_report(report.build())

    with open(reportPath, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)

    return reportPath


def writeOutcomesCsv(report: RunReport, reportDir: str, fileBaseName: str) -> str:
    """
    Назначение:
        Пишет итоги по сущностям в CSV (одна строка на сущность).
    """
    Path(reportDir).mkdir(parents=True, exist_ok=True)
    csvPath = str(Path(reportDir) / f"{fileBaseName}.csv")

    with open(csvPath, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=OUTCOME_CSV_FIELDS)
        writer.writeheader()
        for item in report.items:
            writer.writerow(
                {
                    "entity_id": item.entity_id,
                    "name": item.name,
                    "status": item.status.value,
                    "reason": item.reason or "",
                    "error_code": item.error_code or "",
                    "error_message": item.error_message or "",
                    "target": item.target or "",
                }
            )
    return csvPath
