from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

import typer

from bulkrecon.common.run_id import generate_run_id
from bulkrecon.common.sanitize import maskSecret
from bulkrecon.common.time import getDurationMs
from bulkrecon.config.config import Settings, loadSettings
from bulkrecon.domain.exceptions import FilterResolutionError, SourceUnavailable
from bulkrecon.domain.reconciliation.targets import relocation_target, scalar_target
from bulkrecon.domain.reporting.run_report import RunReport
from bulkrecon.infra.artifacts.report_writer import (
    createEmptyReport,
    finalizeReport,
    writeOutcomesCsv,
    writeReportJson,
)
from bulkrecon.infra.http.graph_client import GraphApiClient
from bulkrecon.infra.logging.setup import (
    LoggedStream,
    closeCommandLogger,
    createCommandLogger,
    logEvent,
)
from bulkrecon.infra.target.graph_gateway import GraphLicenseGateway
from bulkrecon.infra.target.ldap_gateway import LdapDirectoryGateway, createLdapConnection
from bulkrecon.infra.target.vsphere_gateway import (
    TOOLS_UPGRADE_POLICIES,
    VSphereInventoryGateway,
    connectVSphere,
    disconnectVSphere,
)
from bulkrecon.usecases.disable_plans_usecase import buildDisablePlansTarget
from bulkrecon.usecases.group_compare_usecase import GroupCompareUseCase
from bulkrecon.usecases.reconcile_usecase import FilterOptions, ReconcileUseCase

app = typer.Typer(no_args_is_help=True, add_completion=False)

GRAPH_SETTINGS = ["graph_token"]
LDAP_SETTINGS = ["ldap_host", "ldap_username", "ldap_password"]
VSPHERE_SETTINGS = ["vsphere_host", "vsphere_username", "vsphere_password"]


def ensureDir(path: str) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def requireSettings(settings: Settings, names: list[str]) -> None:
    """
    Назначение:
        Проверяет наличие параметров подключения, нужных команде.

    Поведение:
        - Если чего-то не хватает, exit code 2.
    """
    missing = [name for name in names if not getattr(settings, name)]
    if missing:
        typer.echo(f"ERROR: missing settings: {', '.join(missing)}", err=True)
        raise typer.Exit(code=2)


def printRunHeader(runId: str, command: str, settings: Settings, sources: list[str]) -> None:
    """
    Назначение:
        Печатает безопасную сводку параметров запуска (без секретов).
    """
    typer.echo(
        f"run_id={runId} command={command} dry_run={settings.dry_run} "
        f"graph_token={maskSecret(settings.graph_token)} "
        f"ldap_host={settings.ldap_host} ldap_username={settings.ldap_username} "
        f"ldap_password={maskSecret(settings.ldap_password)} "
        f"vsphere_host={settings.vsphere_host} vsphere_username={settings.vsphere_username} "
        f"vsphere_password={maskSecret(settings.vsphere_password)} "
        f"sources={sources} log_level={settings.log_level}"
    )


def printSummary(report: RunReport) -> None:
    typer.echo("attempted={attempted} applied={applied} skipped={skipped} failed={failed}".format(**report.summary()))


def runWithReport(
    ctx: typer.Context,
    commandName: str,
    requiredSettings: list[str],
    runner,
    printCounts: bool = True,
) -> None:
    """
    Назначение:
        Унифицированная обвязка выполнения команд:
        - создаёт логгер + файл лога
        - создаёт skeleton отчёта
        - проверяет обязательные настройки подключения
        - перенаправляет stdout/stderr в лог (tee)
        - пишет отчёт (JSON + CSV) только для завершённого запуска

    Поведение:
        - SourceUnavailable/FilterResolutionError: запись в лог, exit code 2, отчёт не пишется.
        - Иначе exit code берётся из runner (0: без ошибок, 1: есть failed).
    """
    runId = ctx.obj["runId"]
    settings: Settings = ctx.obj["settings"]
    sources = ctx.obj["sources"]

    startMonotonic = time.monotonic()

    logger, logFilePath = createCommandLogger(
        commandName=commandName,
        logDir=settings.log_dir,
        runId=runId,
        logLevel=settings.log_level,
    )

    report = createEmptyReport(runId=runId, command=commandName, configSources=sources)
    report.set_meta(dry_run=settings.dry_run, items_limit=settings.report_items_limit)

    originalStdout = sys.stdout
    originalStderr = sys.stderr
    sys.stdout = LoggedStream(originalStdout, logger, logging.INFO, runId, "stdout")
    sys.stderr = LoggedStream(originalStderr, logger, logging.ERROR, runId, "stderr")

    exitCode = 2
    completed = False

    try:
        logEvent(logger, logging.INFO, runId, "core", "Command started")
        printRunHeader(runId, commandName, settings, sources)

        try:
            requireSettings(settings, requiredSettings)
            exitCode = runner(logger, report)
            completed = True
        except typer.Exit:
            logEvent(logger, logging.ERROR, runId, "config", "Missing connection settings")
        except (SourceUnavailable, FilterResolutionError) as exc:
            logEvent(logger, logging.ERROR, runId, exc.category, f"{commandName} aborted: {exc}")
            typer.echo(f"ERROR: {exc}", err=True)
        except ValueError as exc:
            logEvent(logger, logging.ERROR, runId, "core", f"{commandName} aborted: {exc}")
            typer.echo(f"ERROR: {exc}", err=True)

        if completed and printCounts:
            printSummary(report)

    finally:
        if completed:
            durationMs = getDurationMs(startMonotonic, time.monotonic())
            finalizeReport(report=report, durationMs=durationMs, logFile=logFilePath, reportDir=settings.report_dir)
            baseName = f"{commandName}_{runId}"
            reportPath = writeReportJson(report, settings.report_dir, f"report_{baseName}")
            logEvent(logger, logging.INFO, runId, "report", f"Report written: {reportPath}")
            if settings.report_csv and report.summary()["attempted"] > 0:
                csvPath = writeOutcomesCsv(report, settings.report_dir, f"outcomes_{baseName}")
                logEvent(logger, logging.INFO, runId, "report", f"Outcomes written: {csvPath}")

        sys.stdout.flush()
        sys.stderr.flush()
        sys.stdout = originalStdout
        sys.stderr = originalStderr
        closeCommandLogger(logger)

    raise typer.Exit(code=exitCode)


def createGraphGateway(ctx: typer.Context, settings: Settings) -> GraphLicenseGateway:
    client = GraphApiClient(
        baseUrl=settings.graph_base_url,
        token=settings.graph_token or "",
        timeoutSeconds=settings.timeout_seconds,
        tlsSkipVerify=settings.tls_skip_verify,
        caFile=settings.ca_file,
        retries=settings.retries,
        retryBackoffSeconds=settings.retry_backoff_seconds,
        transport=ctx.obj.get("graphTransport"),
    )
    return GraphLicenseGateway(client)


def createLdapGateway(ctx: typer.Context, settings: Settings) -> tuple[LdapDirectoryGateway, bool]:
    """Возвращает (gateway, owned); owned=False для подключения, переданного через ctx.obj."""
    connection = ctx.obj.get("ldapConnection")
    owned = connection is None
    if connection is None:
        connection = createLdapConnection(
            host=settings.ldap_host or "",
            port=settings.ldap_port,
            useSsl=settings.ldap_use_ssl,
            username=settings.ldap_username or "",
            password=settings.ldap_password or "",
            tlsSkipVerify=settings.tls_skip_verify,
            caFile=settings.ca_file,
        )
    gateway = LdapDirectoryGateway(connection, base_dn=settings.ldap_base_dn, search_scope=settings.ldap_search_scope)
    return gateway, owned


def runToolsPolicyCommand(
    ctx: typer.Context,
    scope: str,
    target: str,
    osGlobs: list[str],
    excludes: list[str],
    includeTemplates: bool,
) -> None:
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger, report) -> int:
        if target not in TOOLS_UPGRADE_POLICIES:
            raise ValueError(f"--target must be one of: {', '.join(TOOLS_UPGRADE_POLICIES)}")
        si = ctx.obj.get("vsphereServiceInstance")
        owned = si is None
        if si is None:
            si = connectVSphere(
                host=settings.vsphere_host or "",
                username=settings.vsphere_username or "",
                password=settings.vsphere_password or "",
                port=settings.vsphere_port,
                tlsSkipVerify=settings.tls_skip_verify,
            )
        try:
            gateway = VSphereInventoryGateway(si)
            options = FilterOptions(
                name_globs=tuple(osGlobs),
                name_field="guest_os",
                exclude_refs=tuple(excludes),
                exclude_templates=not includeTemplates,
            )
            return ReconcileUseCase(gateway, gateway, gateway.apply).run(
                scope=scope,
                compute_target=scalar_target("tools_upgrade_policy", target),
                options=options,
                logger=logger,
                report=report,
                run_id=runId,
                dry_run=settings.dry_run,
            )
        finally:
            if owned:
                disconnectVSphere(si)

    requiredSettings = [] if ctx.obj.get("vsphereServiceInstance") is not None else VSPHERE_SETTINGS
    runWithReport(ctx=ctx, commandName="tools-policy", requiredSettings=requiredSettings, runner=execute)


def runMoveUsersCommand(
    ctx: typer.Context,
    scope: str,
    target: str,
    includeGroups: list[str],
    excludeGroups: list[str],
    excludes: list[str],
    enabledOnly: bool,
) -> None:
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger, report) -> int:
        gateway, owned = createLdapGateway(ctx, settings)
        try:
            options = FilterOptions(
                enabled_only=enabledOnly,
                include_groups=tuple(includeGroups),
                exclude_groups=tuple(excludeGroups),
                exclude_refs=tuple(excludes),
            )
            return ReconcileUseCase(gateway, gateway, gateway.apply).run(
                scope=scope,
                compute_target=relocation_target(target),
                options=options,
                logger=logger,
                report=report,
                run_id=runId,
                dry_run=settings.dry_run,
            )
        finally:
            if owned:
                gateway.conn.unbind()

    requiredSettings = [] if ctx.obj.get("ldapConnection") is not None else LDAP_SETTINGS
    runWithReport(ctx=ctx, commandName="move-users", requiredSettings=requiredSettings, runner=execute)


def runDisablePlansCommand(
    ctx: typer.Context,
    scope: str,
    plans: list[str],
    includeGroups: list[str],
    excludeGroups: list[str],
    excludes: list[str],
    enabledOnly: bool,
) -> None:
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger, report) -> int:
        if not plans:
            raise ValueError("--target must name at least one service plan")
        gateway = createGraphGateway(ctx, settings)
        try:
            compute_target = buildDisablePlansTarget(gateway, scope, plans, logger, report, runId)
            options = FilterOptions(
                enabled_only=enabledOnly,
                include_groups=tuple(includeGroups),
                exclude_groups=tuple(excludeGroups),
                exclude_refs=tuple(excludes),
            )
            code = ReconcileUseCase(gateway, gateway, gateway.apply).run(
                scope=scope,
                compute_target=compute_target,
                options=options,
                logger=logger,
                report=report,
                run_id=runId,
                dry_run=settings.dry_run,
            )
            report.set_context("api", {"retries_total": gateway.client.getRetryAttempts()})
            return code
        finally:
            gateway.client.close()

    runWithReport(ctx=ctx, commandName="disable-plans", requiredSettings=GRAPH_SETTINGS, runner=execute)


def runGroupCompareCommand(ctx: typer.Context, groups: list[str], provider: str) -> None:
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger, report) -> int:
        if len(groups) != 2:
            raise ValueError("specify exactly two --group options")
        if provider == "graph":
            gateway = createGraphGateway(ctx, settings)
            close = gateway.client.close
        else:
            gateway, owned = createLdapGateway(ctx, settings)
            close = gateway.conn.unbind if owned else (lambda: None)
        try:
            comparison = GroupCompareUseCase(gateway).run(groups[0], groups[1], logger, report, runId)
        finally:
            close()
        typer.echo(f"only_in_first={len(comparison.only_in_first)} "
                   f"only_in_second={len(comparison.only_in_second)} in_both={len(comparison.in_both)}")
        for member in comparison.only_in_first:
            typer.echo(f"< {member}")
        for member in comparison.only_in_second:
            typer.echo(f"> {member}")
        return 0

    if provider == "graph":
        requiredSettings = GRAPH_SETTINGS
    elif ctx.obj.get("ldapConnection") is not None:
        requiredSettings = []
    else:
        requiredSettings = LDAP_SETTINGS
    runWithReport(
        ctx=ctx,
        commandName="group-compare",
        requiredSettings=requiredSettings,
        runner=execute,
        printCounts=False,
    )


def _splitPlans(values: list[str]) -> list[str]:
    result: list[str] = []
    for value in values:
        result.extend(part.strip() for part in value.split(",") if part.strip())
    return result


@app.callback()
def main(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="Path to config.yml"),
    runId: str | None = typer.Option(None, "--run-id", help="Run identifier (UUID). If omitted, generated."),
    logLevel: str | None = typer.Option(None, "--log-level", help="Log level: ERROR|WARN|INFO|DEBUG"),
    logDir: str | None = typer.Option(None, "--log-dir", help="Directory for logs."),
    reportDir: str | None = typer.Option(None, "--report-dir", help="Directory for reports."),
    dryRun: bool | None = typer.Option(None, "--dry-run/--no-dry-run", help="Do not apply changes"),
    reportCsv: bool | None = typer.Option(None, "--report-csv/--no-report-csv", help="Write per-entity outcomes CSV"),
    reportItemsLimit: int | None = typer.Option(None, "--report-items-limit", help="Limit report items stored"),
    timeoutSeconds: float | None = typer.Option(None, "--timeout-seconds", help="API timeout in seconds"),
    retries: int | None = typer.Option(None, "--retries", help="Retry attempts for API calls"),
    retryBackoffSeconds: float | None = typer.Option(None, "--retry-backoff-seconds", help="Base backoff for retries"),
    tlsSkipVerify: bool | None = typer.Option(None, "--tls-skip-verify", help="Disable TLS verification"),
    caFile: str | None = typer.Option(None, "--ca-file", help="CA file path"),
    graphBaseUrl: str | None = typer.Option(None, "--graph-base-url", help="Microsoft Graph base URL"),
    graphToken: str | None = typer.Option(None, "--graph-token", help="Graph bearer token (avoid; use env/file)"),
    graphTokenFile: str | None = typer.Option(None, "--graph-token-file", help="Read Graph token from file"),
    ldapHost: str | None = typer.Option(None, "--ldap-host", help="Domain controller host"),
    ldapPort: int | None = typer.Option(None, "--ldap-port", help="LDAP port"),
    ldapUseSsl: bool | None = typer.Option(None, "--ldap-use-ssl/--no-ldap-use-ssl", help="Use LDAPS"),
    ldapUsername: str | None = typer.Option(None, "--ldap-username", help="Bind user (DN or user@domain)"),
    ldapPassword: str | None = typer.Option(None, "--ldap-password", help="Bind password (avoid; use env)"),
    ldapBaseDn: str | None = typer.Option(None, "--ldap-base-dn", help="Base DN for group/user lookups by name"),
    ldapSearchScope: str | None = typer.Option(None, "--ldap-search-scope", help="SUBTREE|LEVEL"),
    vsphereHost: str | None = typer.Option(None, "--vsphere-host", help="vCenter host"),
    vspherePort: int | None = typer.Option(None, "--vsphere-port", help="vCenter port"),
    vsphereUsername: str | None = typer.Option(None, "--vsphere-username", help="vCenter username"),
    vspherePassword: str | None = typer.Option(None, "--vsphere-password", help="vCenter password (avoid; use env)"),
):
    """
    Назначение:
        Глобальная инициализация CLI:
        - генерирует/принимает run_id
        - загружает настройки (CLI > ENV > config > defaults)
        - создаёт каталоги log/report
        - сохраняет всё в ctx.obj для подкоманд
    """
    if graphTokenFile and not graphToken:
        p = Path(graphTokenFile)
        if not p.exists() or not p.is_file():
            typer.echo(f"ERROR: graph-token-file not found: {graphTokenFile}", err=True)
            raise typer.Exit(code=2)
        graphToken = p.read_text(encoding="utf-8").strip()

    if not runId:
        runId = generate_run_id()

    cliOverrides = {
        "log_level": logLevel,
        "log_dir": logDir,
        "report_dir": reportDir,
        "dry_run": dryRun,
        "report_csv": reportCsv,
        "report_items_limit": reportItemsLimit,
        "timeout_seconds": timeoutSeconds,
        "retries": retries,
        "retry_backoff_seconds": retryBackoffSeconds,
        "tls_skip_verify": tlsSkipVerify,
        "ca_file": caFile,
        "graph_base_url": graphBaseUrl,
        "graph_token": graphToken,
        "ldap_host": ldapHost,
        "ldap_port": ldapPort,
        "ldap_use_ssl": ldapUseSsl,
        "ldap_username": ldapUsername,
        "ldap_password": ldapPassword,
        "ldap_base_dn": ldapBaseDn,
        "ldap_search_scope": ldapSearchScope,
        "vsphere_host": vsphereHost,
        "vsphere_port": vspherePort,
        "vsphere_username": vsphereUsername,
        "vsphere_password": vspherePassword,
    }
    try:
        loaded = loadSettings(config_path=config, cli_overrides=cliOverrides)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid settings: {exc}", err=True)
        raise typer.Exit(code=2)

    ensureDir(loaded.settings.log_dir)
    ensureDir(loaded.settings.report_dir)

    # ctx.obj может содержать заранее созданные подключения (тесты, встраивание).
    injected = dict(ctx.obj or {})
    ctx.obj = {
        **injected,
        "runId": runId,
        "settings": loaded.settings,
        "sources": loaded.sources_used,
        "configPath": config,
    }


@app.command("tools-policy")
def toolsPolicy(
    ctx: typer.Context,
    scope: str = typer.Option(..., "--scope", help="Folder, datacenter or cluster name; '*' for whole inventory"),
    target: str = typer.Option(..., "--target", help="manual|upgradeAtPowerCycle"),
    osGlob: list[str] | None = typer.Option(None, "--os-glob", help="Guest OS glob, e.g. '*Windows*'"),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="VM name to exclude"),
    includeTemplates: bool = typer.Option(False, "--include-templates/--exclude-templates", help="Include VM templates"),
):
    runToolsPolicyCommand(ctx, scope, target, osGlob or [], exclude or [], includeTemplates)


@app.command("move-users")
def moveUsers(
    ctx: typer.Context,
    scope: str = typer.Option(..., "--scope", help="Source OU distinguished name"),
    target: str = typer.Option(..., "--target", help="Destination OU distinguished name"),
    includeGroup: list[str] | None = typer.Option(None, "--include-group", help="Only members of this group"),
    excludeGroup: list[str] | None = typer.Option(None, "--exclude-group", help="Skip members of this group"),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="User (sAMAccountName/UPN/DN) to exclude"),
    enabledOnly: bool = typer.Option(False, "--enabled-only/--all", help="Only enabled accounts"),
):
    runMoveUsersCommand(ctx, scope, target, includeGroup or [], excludeGroup or [], exclude or [], enabledOnly)


@app.command("disable-plans")
def disablePlans(
    ctx: typer.Context,
    scope: str = typer.Option(..., "--scope", help="License SKU part number or SKU id"),
    target: list[str] = typer.Option(..., "--target", help="Service plan names or ids, comma-separated"),
    includeGroup: list[str] | None = typer.Option(None, "--include-group", help="Only members of this group"),
    excludeGroup: list[str] | None = typer.Option(None, "--exclude-group", help="Skip members of this group"),
    exclude: list[str] | None = typer.Option(None, "--exclude", help="User principal name to exclude"),
    enabledOnly: bool = typer.Option(False, "--enabled-only/--all", help="Only enabled accounts"),
):
    runDisablePlansCommand(
        ctx,
        scope,
        _splitPlans(target),
        includeGroup or [],
        excludeGroup or [],
        exclude or [],
        enabledOnly,
    )


@app.command("group-compare")
def groupCompare(
    ctx: typer.Context,
    group: list[str] = typer.Option(..., "--group", help="Group to compare (specify twice)"),
    provider: str = typer.Option("graph", "--provider", help="graph|ldap", case_sensitive=False),
):
    provider = provider.lower()
    if provider not in ("graph", "ldap"):
        typer.echo("ERROR: --provider must be graph or ldap", err=True)
        raise typer.Exit(code=2)
    runGroupCompareCommand(ctx, group, provider)
