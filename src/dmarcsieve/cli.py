"""DmarcSieve CLI: Typer app with all subcommands."""

from __future__ import annotations

from typing import Optional

import typer

app = typer.Typer(
    name="dmarcsieve",
    help="DMARC aggregate report pipeline: mailbox intake, AI assessment, alerting.",
    no_args_is_help=True,
)

log_level_option = typer.Option(None, "--log-level", "-l", help="Override logging level (DEBUG, INFO, ...).")


def _bootstrap(log_level: str | None = None):
    """Load config and configure logging. Returns the config."""
    from dmarcsieve.config import load_config
    from dmarcsieve.logging_setup import setup_logging

    config = load_config()
    setup_logging(config.logging, level=log_level)
    return config


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


# --- Database commands ---

db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")


@db_app.callback(invoke_without_command=True)
def db_callback(
    ctx: typer.Context,
    reset: bool = typer.Option(False, "--reset", help="Wipe and recreate the database."),
    stats: bool = typer.Option(False, "--stats", help="Show row counts for all tables."),
):
    """Database management."""
    from dmarcsieve.database import db_stats, get_db, init_db, reset_db

    config = _bootstrap()

    if reset:
        conn = reset_db(config)
        typer.echo("Database reset and initialized.")
        conn.close()
        return

    if stats:
        conn = get_db(config)
        init_db(conn)
        s = db_stats(conn)
        typer.echo("Table row counts:")
        for table, count in s.items():
            status = f"{count}" if count >= 0 else "missing"
            typer.echo(f"  {table:30s} {status}")
        conn.close()
        return

    # No flags, show help
    typer.echo(ctx.get_help())


# --- Pipeline commands ---

@app.command()
def ingest(log_level: Optional[str] = log_level_option):
    """Fetch unseen report messages from the mailbox and store their reports."""
    from dmarcsieve.errors import DmarcSieveError
    from dmarcsieve.scheduler import run_intake

    config = _bootstrap(log_level)
    typer.echo(f"Checking {config.imap.mailbox} on {config.imap.host or '<unset>'}...")
    try:
        result = run_intake(config)
    except DmarcSieveError as e:
        _fail(str(e))

    typer.echo(
        f"Intake complete: {result.messages} message(s), {result.succeeded} succeeded, "
        f"{result.failed} failed, {result.skipped} skipped."
    )
    typer.echo(f"  New reports: {result.reports_created}  Duplicates: {result.duplicates}")


@app.command()
def analyze(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="AI model spec (provider:model). Default: from config/env."),
    delay: Optional[float] = typer.Option(None, "--delay", help="Seconds to wait between reports."),
    log_level: Optional[str] = log_level_option,
):
    """Run AI assessment on every unprocessed report."""
    from dmarcsieve.database import get_db, init_db
    from dmarcsieve.errors import DmarcSieveError
    from dmarcsieve.stages.assess import analyze_reports

    config = _bootstrap(log_level)
    conn = get_db(config)
    init_db(conn)

    model_spec = model or config.ai.model_spec
    typer.echo(f"Analyzing with model: {model_spec}")
    try:
        count = analyze_reports(
            conn,
            model_spec=model_spec,
            ai_config=config.ai.to_provider_dict(),
            postal_config=config.postal,
            request_delay_seconds=config.ai.request_delay_seconds if delay is None else delay,
        )
    except DmarcSieveError as e:
        _fail(str(e))
    finally:
        conn.close()

    typer.echo(f"Assessment complete: {count} report(s) analyzed.")


@app.command()
def run(log_level: Optional[str] = log_level_option):
    """Run the full pipeline once: intake, then assessment."""
    from dmarcsieve.scheduler import PipelineScheduler

    config = _bootstrap(log_level)
    scheduler = PipelineScheduler.from_config(config)
    outcome = scheduler.trigger(source="cli")

    if outcome.status != "success":
        _fail(f"Pipeline run failed after {outcome.duration_ms} ms: {outcome.error}")
    typer.echo(f"Pipeline complete in {outcome.duration_ms} ms: {outcome.analyzed} report(s) analyzed.")


@app.command()
def notify(
    preview: bool = typer.Option(False, "--preview", help="Print the alert instead of sending it."),
    log_level: Optional[str] = log_level_option,
):
    """Send the alert for the latest HIGH/CRITICAL analysis that has none."""
    from dmarcsieve.database import get_db, get_latest_unnotified_alert, get_report, init_db
    from dmarcsieve.stages.notify import build_subject, render_plain, send_threat_notification

    config = _bootstrap(log_level)
    conn = get_db(config)
    init_db(conn)

    try:
        analysis = get_latest_unnotified_alert(conn)
        if analysis is None:
            typer.echo("No HIGH/CRITICAL analysis without a notification.")
            return

        typer.echo(f"Found analysis {analysis.id} ({analysis.threat_level}) for report {analysis.report_id}")

        if preview:
            report = get_report(conn, analysis.report_id)
            if report is None:
                _fail(f"Report {analysis.report_id} not found")
            typer.echo(f"Subject: {build_subject(analysis, report)}\n")
            typer.echo(render_plain(analysis, report))
            return

        if send_threat_notification(conn, analysis, analysis.report_id, config.postal):
            typer.echo(f"Notification sent to {config.postal.to_email}.")
        else:
            _fail("Notification was not sent; see log for details.")
    finally:
        conn.close()


@app.command("schedule")
def schedule_cmd(
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Minutes between runs. Default: from config/env."),
    no_initial_run: bool = typer.Option(False, "--no-initial-run", help="Wait one interval before the first run."),
    log_level: Optional[str] = log_level_option,
):
    """Run the pipeline on a timer until interrupted."""
    from dmarcsieve.scheduler import PipelineScheduler

    config = _bootstrap(log_level)
    if interval is not None:
        config.scheduler.interval_minutes = interval

    scheduler = PipelineScheduler.from_config(config)
    typer.echo(f"Scheduler running every {scheduler.interval_minutes} minute(s). Ctrl+C to stop.")
    scheduler.run_forever(run_immediately=config.scheduler.run_on_start and not no_initial_run)


# --- Reporting commands ---

@app.command()
def status(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of intake log entries to show."),
):
    """Show pending work and recent intake activity."""
    from dmarcsieve.database import get_db, init_db

    config = _bootstrap()
    conn = get_db(config)
    init_db(conn)

    pending = conn.execute(
        "SELECT COUNT(*) as cnt FROM dmarc_reports WHERE processed = 0"
    ).fetchone()["cnt"]
    typer.echo(f"Unprocessed reports: {pending}")

    last = conn.execute(
        """SELECT a.analyzed_at, a.threat_level, r.domain, r.org_name
           FROM ai_analysis a JOIN dmarc_reports r ON r.id = a.report_id
           ORDER BY a.analyzed_at DESC, a.id DESC LIMIT 1"""
    ).fetchone()
    if last:
        typer.echo(
            f"Last analysis: {last['analyzed_at']}  {last['threat_level']}  "
            f"{last['domain']} (from {last['org_name']})"
        )

    rows = conn.execute(
        """SELECT processed_at, email_uid, status, attachment_count, subject, error_message
           FROM processing_log ORDER BY id DESC LIMIT ?""",
        (limit,),
    ).fetchall()

    typer.echo(f"\nRecent intake ({len(rows)}):")
    for row in rows:
        subject = (row["subject"] or "")[:40]
        typer.echo(
            f"  {row['processed_at']}  uid={row['email_uid']:<8} {row['status']:<8} "
            f"att={row['attachment_count']}  {subject}"
        )
        if row["error_message"]:
            typer.echo(f"      {row['error_message']}")

    conn.close()


@app.command()
def stats():
    """Show pipeline row counts by processing state."""
    from dmarcsieve.database import get_db, init_db

    config = _bootstrap()
    conn = get_db(config)
    init_db(conn)

    totals = conn.execute(
        """SELECT COUNT(*) as reports,
                  SUM(CASE WHEN processed = 1 THEN 1 ELSE 0 END) as processed
           FROM dmarc_reports"""
    ).fetchone()
    typer.echo(f"Reports: {totals['reports']} ({totals['processed'] or 0} processed)")

    typer.echo("\nAnalyses by threat level:")
    for row in conn.execute(
        """SELECT threat_level, COUNT(*) as cnt FROM ai_analysis
           GROUP BY threat_level ORDER BY cnt DESC"""
    ).fetchall():
        typer.echo(f"  {row['threat_level']:<12} {row['cnt']}")

    typer.echo("\nNotifications:")
    for row in conn.execute(
        "SELECT status, COUNT(*) as cnt FROM notifications GROUP BY status"
    ).fetchall():
        typer.echo(f"  {row['status']:<12} {row['cnt']}")

    typer.echo("\nIntake log:")
    for row in conn.execute(
        "SELECT status, COUNT(*) as cnt FROM processing_log GROUP BY status"
    ).fetchall():
        typer.echo(f"  {row['status']:<12} {row['cnt']}")

    conn.close()


# --- Web command ---

@app.command()
def web(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Bind host."),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload for development."),
):
    """Start the HTTP service with the background scheduler."""
    import uvicorn

    _bootstrap()
    typer.echo(f"Starting DmarcSieve at http://{host}:{port}/api/health")
    uvicorn.run(
        "dmarcsieve.web.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


if __name__ == "__main__":
    app()
