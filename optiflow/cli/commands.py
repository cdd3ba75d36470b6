"""CLI interface for OptiFlow."""

import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path

import click

from optiflow.core import management
from optiflow.core.config import AppConfig
from optiflow.core.constants import (
    APP_HOME, APP_NAME, APP_VERSION, PRIORITY_RANK, VALID_STATUSES, JobPriority,
)
from optiflow.core.db_sqlite import Database
from optiflow.core.services import TICK_NAMES, build_services, build_scheduler, run_tick

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(home: Path, verbose: bool = False):
    """File log under <home>/logs, plus stderr when verbose."""
    log_dir = home / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    handlers = [logging.FileHandler(log_dir / "optiflow.log", encoding="utf-8")]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def get_config(ctx: click.Context) -> AppConfig:
    obj = ctx.obj
    if 'config' not in obj:
        obj['config'] = AppConfig(obj['home'] / "config.json")
    return obj['config']


def get_services(ctx: click.Context):
    """Build the component graph once per invocation."""
    obj = ctx.obj
    if 'services' not in obj:
        db = Database(obj['home'] / "optiflow.db")
        obj['services'] = build_services(get_config(ctx), db=db)
        ctx.call_on_close(obj['services'].close)
    return obj['services']


def _echo_result(result: dict):
    """Print a management result with a ✓/✗ marker; exit 1 on failure."""
    if result.get('success'):
        click.echo(f"✓ {result.get('message', 'OK')}")
    else:
        click.echo(f"✗ {result.get('message', 'Failed')}", err=True)
        sys.exit(1)


@click.group()
@click.option("--home", type=click.Path(file_okay=False, path_type=Path),
              envvar="OPTIFLOW_HOME", default=APP_HOME, show_default=True,
              help="Directory holding the database, config and logs")
@click.option("-v", "--verbose", is_flag=True, help="Also log to stderr")
@click.version_option(APP_VERSION, prog_name=APP_NAME)
@click.pass_context
def cli(ctx: click.Context, home: Path, verbose: bool):
    """OptiFlow - content optimization job queue and webhook delivery"""
    home.mkdir(parents=True, exist_ok=True)
    configure_logging(home, verbose)
    ctx.ensure_object(dict)
    ctx.obj['home'] = home


# ── Scheduler ─────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def run(ctx: click.Context):
    """Run every periodic tick until interrupted.

    Example:
        optiflow run
    """
    services = get_services(ctx)
    scheduler = build_scheduler(services)
    click.echo(f"Starting scheduler: {', '.join(scheduler.names())}")
    scheduler.start()
    try:
        while not scheduler.wait(1):
            pass
    except KeyboardInterrupt:
        click.echo("\nShutting down scheduler...")
    finally:
        scheduler.stop(timeout=30)
    click.echo("Scheduler stopped")


@cli.command()
@click.argument("name", type=click.Choice(TICK_NAMES))
@click.pass_context
def tick(ctx: click.Context, name: str):
    """Run one periodic entry point now.

    Example:
        optiflow tick process_batch
    """
    result = run_tick(get_services(ctx), name)
    if is_dataclass(result):
        result = asdict(result)
    click.echo(json.dumps(result, indent=2, default=str))


# ── Jobs ──────────────────────────────────────────────────────────────

@cli.command()
@click.argument("subject_id", type=int)
@click.argument("payload_json")
@click.option("--priority", type=click.Choice(list(PRIORITY_RANK)),
              default=JobPriority.NORMAL, show_default=True)
@click.pass_context
def enqueue(ctx: click.Context, subject_id: int, payload_json: str, priority: str):
    """Enqueue an optimization job for a subject.

    Example:
        optiflow enqueue 42 '{"content": {"title": "Brew guide", "body": "Grind, bloom, pour.", "meta": {}}, "analysis": {"score": 61, "keyword": "coffee", "checks": {}}}'
    """
    try:
        payload = json.loads(payload_json)
    except json.JSONDecodeError as e:
        click.echo(f"✗ Invalid JSON: {e}", err=True)
        sys.exit(1)

    result = management.enqueue_job(get_services(ctx), management.allow_all,
                                    subject_id, payload, priority)
    if result['success']:
        result['message'] = f"Job {result['job_id']} enqueued ({result['status']})"
    _echo_result(result)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show queue status and statistics."""
    result = management.queue_status(get_services(ctx), management.allow_all)
    if as_json:
        click.echo(json.dumps(result, indent=2, default=str))
        return

    dispatcher = result['dispatcher']
    jobs = result['jobs']
    webhooks = result['webhooks']

    click.echo("\n" + "=" * 50)
    click.echo(f"{APP_NAME} Status")
    click.echo("=" * 50)
    click.echo(f"Processing:     {'yes' if dispatcher['is_processing'] else 'no'}")
    click.echo(f"Queue depth:    {dispatcher['queue_depth']}")
    if dispatcher['last_error']:
        click.echo(f"Last error:     {dispatcher['last_error']}")
    click.echo("\nJobs:")
    for key in ('pending', 'processing', 'retry', 'completed', 'failed', 'cancelled', 'total'):
        click.echo(f"  {key:<12} {jobs[key]}")
    click.echo(f"  success rate {jobs['success_rate']}%")
    click.echo(f"  avg time     {jobs['avg_processing_time']}s")
    click.echo(f"  avg gain     {jobs['avg_score_improvement']}")
    click.echo("\nWebhooks:")
    click.echo(f"  pending      {webhooks['pending']}")
    click.echo(f"  failed       {webhooks['failed']}")
    click.echo(f"  total sent   {webhooks['total_sent']}")
    click.echo(f"  last sent    {webhooks['last_sent'] or '-'}")
    click.echo("=" * 50 + "\n")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_context
def cancel(ctx: click.Context, job_id: int):
    """Cancel a pending or retry job."""
    _echo_result(management.cancel_job(get_services(ctx), management.allow_all, job_id))


@cli.command()
@click.argument("job_id", type=int)
@click.pass_context
def retry(ctx: click.Context, job_id: int):
    """Put a failed job back on the queue."""
    _echo_result(management.retry_job(get_services(ctx), management.allow_all, job_id))


@cli.command()
@click.option("--status", type=click.Choice(VALID_STATUSES), default=None,
              help="Only jobs in this status")
@click.option("--subject", "subject_id", type=int, default=None,
              help="Only jobs for this subject (newest first)")
@click.option("--all", "include_completed", is_flag=True,
              help="With --subject, include completed jobs")
@click.option("--limit", type=int, default=100, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Export as JSON")
@click.pass_context
def jobs(ctx: click.Context, status: str | None, subject_id: int | None,
         include_completed: bool, limit: int, offset: int, as_json: bool):
    """List jobs. Without filters, shows the live queue in claim order.

    Example:
        optiflow jobs --subject 42 --all --json
    """
    result = management.list_jobs(get_services(ctx), management.allow_all,
                                  status=status, subject_id=subject_id,
                                  include_completed=include_completed,
                                  limit=limit, offset=offset)
    if not result['success']:
        _echo_result(result)
    if as_json:
        click.echo(json.dumps(result['jobs'], indent=2, default=str))
        return

    if not result['jobs']:
        click.echo("No jobs found")
        return
    click.echo(f"{'ID':>6}  {'SUBJECT':>7}  {'STATUS':<10} {'PRIORITY':<8} {'TRIES':>5}  SCORE")
    for job in result['jobs']:
        click.echo(f"{job['id']:>6}  {job['subject_id']:>7}  {job['status']:<10} "
                   f"{job['priority']:<8} {job['attempts']:>5}  "
                   f"{job['initial_score']} -> {job['current_score']}")


@cli.command("check-automation")
@click.pass_context
def check_automation(ctx: click.Context):
    """Check that the automation service is reachable."""
    _echo_result(management.check_automation(get_services(ctx), management.allow_all))


# ── Webhooks ──────────────────────────────────────────────────────────

@cli.command()
@click.argument("capture_id", type=int)
@click.pass_context
def resend(ctx: click.Context, capture_id: int):
    """Resend the webhook for a capture."""
    _echo_result(management.resend_webhook(get_services(ctx), management.allow_all, capture_id))


@cli.command("test-webhook")
@click.option("--url", default=None, help="Receiver URL (defaults to webhook_url)")
@click.pass_context
def test_webhook(ctx: click.Context, url: str | None):
    """Send a test request to the webhook receiver."""
    result = management.test_webhook(get_services(ctx), management.allow_all, url)
    if result.get('response_code') is not None:
        click.echo(f"HTTP {result['response_code']}")
    _echo_result(result)


# ── Config ────────────────────────────────────────────────────────────

@cli.group()
def config():
    """View or change settings"""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context):
    """Print the effective configuration (API keys masked)."""
    click.echo(json.dumps(get_config(ctx).as_dict(redact=True), indent=2))


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str):
    """Set a configuration value.

    Example:
        optiflow config set batch_size 10
    """
    cfg = get_config(ctx)
    if key not in cfg.as_dict():
        click.echo(f"✗ Unknown config key: {key}", err=True)
        sys.exit(1)
    cfg.set(key, value)
    click.echo(f"✓ {key} = {cfg.get(key)}")
