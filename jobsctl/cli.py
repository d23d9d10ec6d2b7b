import json
from datetime import timedelta

import click

from . import config
from .db import init_db, connect_db
from .errors import JobsError
from .handlers import build_default_registry
from .logger import setup_logger
from .models import STATUSES, JobType
from .repository import counts, get_config, get_job, list_jobs, purge_finished, set_config
from .scheduler import JobScheduler
from .utils import parse_delay_to_seconds, to_iso, utc_now


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


@click.group(help="jobsctl — background job scheduler CLI")
@click.option("--db", "db_path", default=None, envvar="JOBSCTL_DB",
              help="SQLite database file (default: jobs.db)")
@click.option("--log-level", default=None, help="Logging level, e.g. DEBUG")
@click.pass_context
def cli(ctx, db_path, log_level):
    setup_logger(level=log_level)
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db_path": db_path}


def _scheduler(ctx) -> JobScheduler:
    db_path = ctx.obj["db_path"]
    return JobScheduler(build_default_registry(db_path), db_path)


def _with_conn(ctx, fn, *args, **kwargs):
    conn = connect_db(ctx.obj["db_path"])
    try:
        return fn(conn, *args, **kwargs)
    finally:
        conn.close()


# ---------- Schedule ----------
@cli.command("schedule", help="Schedule a job of TYPE")
@click.argument("job_type", metavar="TYPE")
@click.option("--payload", default=None, help='JSON object, e.g. \'{"limit": 100}\'')
@click.option("--run-at", default=None, help="ISO datetime; treated as UTC unless it carries an offset")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
@click.pass_context
def schedule_cmd(ctx, job_type, payload, run_at, delay_str):
    try:
        if run_at and delay_str:
            raise click.ClickException("Use either --run-at or --delay, not both.")
        try:
            data = json.loads(payload) if payload else {}
        except json.JSONDecodeError as e:
            raise click.ClickException(f"--payload is not valid JSON: {e}")

        when = run_at
        if delay_str:
            when = utc_now() + timedelta(seconds=parse_delay_to_seconds(delay_str))

        job_id = _scheduler(ctx).schedule_job(job_type, data, when)
        click.secho(
            f"Scheduled {job_type} -> {job_id} "
            f"({'delay='+delay_str if delay_str else ('run_at='+run_at if run_at else 'run_at=now')})",
            fg="green",
        )
    except (JobsError, ValueError, click.ClickException) as e:
        _fail(e)


# ---------- Process ----------
@cli.command("process", help="Claim and run all due jobs once (suitable for cron)")
@click.pass_context
def process_cmd(ctx):
    try:
        processed = _scheduler(ctx).process_pending_jobs()
    except JobsError as e:
        _fail(e)
    click.secho(f"Processed {processed} job(s).", fg="cyan")
    click.echo(json.dumps(_with_conn(ctx, counts), indent=2))


@cli.command("init", help="Schedule an immediate run of each recurring job type with nothing pending")
@click.pass_context
def init_cmd(ctx):
    try:
        scheduled = _scheduler(ctx).init_recurring_jobs()
    except JobsError as e:
        _fail(e)
    for jt, job_id in scheduled.items():
        click.echo(f"Scheduled initial job: {jt.value} -> {job_id} "
                   f"(runs every {config.RECURRING_INTERVALS[jt]} minutes)")
    click.secho(f"Initialized {len(scheduled)} background job(s).", fg="green")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def list_cmd(ctx, status, job_type, limit):
    jobs = _with_conn(ctx, list_jobs, status=status, job_type=job_type, limit=limit)

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        jt = j.type.value if isinstance(j.type, JobType) else j.type
        line = f"{j.id} | {jt:<26} | {j.status:<10} | scheduled_for={j.scheduled_for}"
        if j.error:
            line += f" | error={j.error}"
        click.echo(line)


@cli.command("show")
@click.argument("job_id")
@click.pass_context
def show_cmd(ctx, job_id):
    job = _with_conn(ctx, get_job, job_id)
    if job is None:
        _fail(f"Job {job_id} not found.")
    click.echo(json.dumps({
        "id": job.id,
        "type": job.type.value if isinstance(job.type, JobType) else job.type,
        "status": job.status,
        "payload": job.payload,
        "result": job.result,
        "error": job.error,
        "scheduled_for": job.scheduled_for,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "completed_at": job.completed_at,
    }, indent=2))


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    click.echo(json.dumps(_with_conn(ctx, counts), indent=2))


@cli.command("types", help="List job types that have a handler, with their recurrence")
@click.pass_context
def types_cmd(ctx):
    for jt in _scheduler(ctx).registry:
        minutes = config.RECURRING_INTERVALS.get(jt)
        click.echo(f"{jt.value:<26} every {minutes}m" if minutes else jt.value)


@cli.command("purge", help="Delete completed/failed jobs older than a given age")
@click.option("--older-than", "age", default="7d", show_default=True, help="e.g. 12h, 7d")
@click.pass_context
def purge_cmd(ctx, age):
    try:
        cutoff = to_iso(utc_now() - timedelta(seconds=parse_delay_to_seconds(age)))
        deleted = _with_conn(ctx, purge_finished, cutoff)
    except (JobsError, ValueError) as e:
        _fail(e)
    click.secho(f"Purged {deleted} job(s) last updated before {cutoff}.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    click.echo(json.dumps(_with_conn(ctx, get_config), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    try:
        _with_conn(ctx, set_config, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)


def main():
    cli()
