from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s runId=%(runId)s comp=%(component)s msg=%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


class RunContextFilter(logging.Filter):
    """
    Назначение:
        Подставляет runId/component в записи, пришедшие без extra
        (pyVmomi, ldap3, httpx), чтобы LOG_FORMAT всегда форматировался.
    """

    def __init__(self, runId: str):
        super().__init__()
        self.runId = runId

    def filter(self, record: logging.LogRecord) -> bool:
        record.runId = getattr(record, "runId", self.runId)
        record.component = getattr(record, "component", "core")
        return True


class LoggedStream:
    """
    Назначение:
        Обёртка над stdout/stderr: текст уходит в исходный stream без изменений,
        а каждая завершённая строка дополнительно пишется в лог команды.

    Контракт:
        - Пустые строки в лог не попадают.
        - Незавершённый хвост сбрасывается в лог при flush().
        - Остальные атрибуты (encoding, isatty, ...) берутся у исходного stream.
    """

    def __init__(self, stream, logger: logging.Logger, level: int, runId: str, component: str):
        self.stream = stream
        self.logger = logger
        self.level = level
        self.extra = {"runId": runId, "component": component}
        self.pending = ""

    def write(self, text: str) -> int:
        written = self.stream.write(text)
        self.pending += text
        *lines, self.pending = self.pending.split("\n")
        for line in lines:
            self._emit(line)
        return written

    def flush(self) -> None:
        self.stream.flush()
        self._emit(self.pending)
        self.pending = ""

    def _emit(self, line: str) -> None:
        if line.strip():
            self.logger.log(self.level, line.rstrip(), extra=self.extra)

    def __getattr__(self, name: str):
        return getattr(self.stream, name)


def mapLogLevel(levelName: str) -> int:
    """ERROR|WARN|WARNING|INFO|DEBUG -> logging level; иначе ValueError."""
    value = (levelName or "").strip().upper()
    if value == "WARN":
        value = "WARNING"
    if value not in ("ERROR", "WARNING", "INFO", "DEBUG"):
        raise ValueError(f"Unsupported log level: {levelName}")
    return logging.getLevelName(value)


def createCommandLogger(commandName: str, logDir: str, runId: str, logLevel: str) -> tuple[logging.Logger, str]:
    """
    Назначение:
        Логгер одного запуска подкоманды с файлом <logDir>/<command>_<runId>.log.

    Выходные данные:
        (logger, logFilePath)
    """
    level = mapLogLevel(logLevel)
    logPath = Path(logDir)
    logPath.mkdir(parents=True, exist_ok=True)
    logFilePath = str(logPath / f"{commandName}_{runId}.log")

    handler = logging.FileHandler(logFilePath, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler.addFilter(RunContextFilter(runId))

    logger = logging.getLogger(f"bulkReconcile.{commandName}.{runId}")
    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(level)
    logger.addHandler(handler)
    return logger, logFilePath


def closeCommandLogger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def logEvent(logger: logging.Logger, level: int, runId: str, component: str, message: str) -> None:
    """Единая точка записи событий с runId/component."""
    logger.log(level, message, extra={"runId": runId, "component": component})
