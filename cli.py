#!/usr/bin/env python3
"""
HowTube CLI

Submit videos, follow their progress, read generated guides and run the API
server from the command line.
"""

import asyncio
import json
from typing import Optional

import click
from tqdm import tqdm

from config import configure_logging, get_settings
from core.broadcaster import StatusBroadcaster
from core.database import DatabaseManager, create_database
from core.error_handling import PipelineError
from core.guide_storage import GuideStorage
from core.job_store import JobStore
from workers.orchestrator import build_orchestrator

__version__ = "1.0.0"


def _run(coro):
    """Run a coroutine, turning pipeline errors into click errors."""
    try:
        return asyncio.run(coro)
    except PipelineError as e:
        raise click.ClickException(e.message)


async def _with_database(func, *args, **kwargs):
    manager = DatabaseManager(get_settings().database_url)
    await manager.initialize()
    try:
        return await func(manager, *args, **kwargs)
    finally:
        await manager.close()


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version and exit')
@click.option('--log-level', default=None, help='Override LOG_LEVEL')
@click.pass_context
def cli(ctx, version, log_level):
    """
    HowTube

    Turn a video URL into a structured, multi-section written guide.
    """
    if version:
        click.echo(f"howtube version {__version__}")
        return

    configure_logging(log_level)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command('init-db')
def init_db():
    """Create the database tables."""
    async def init():
        manager = await create_database(get_settings().database_url)
        await manager.close()

    _run(init())
    click.echo(f"✅ Database ready at {get_settings().database_url}")


@cli.command()
@click.option('--host', default=None, help='Bind address (defaults to API_HOST)')
@click.option('--port', type=int, default=None, help='Port (defaults to API_PORT)')
def serve(host: Optional[str], port: Optional[int]):
    """Run the HTTP API."""
    import uvicorn
    from api.main import create_app

    settings = get_settings()
    uvicorn.run(create_app(settings), host=host or settings.api_host, port=port or settings.api_port)


@cli.command()
@click.argument('url')
@click.option('--user', 'user_id', required=True, help='User id that owns the job')
@click.option('--style', type=click.Choice(['default', 'concise', 'detailed']), default=None)
@click.option('--audience', type=click.Choice(['beginner', 'intermediate', 'advanced']), default=None)
@click.option('--max-length', type=int, default=None, help='Guide length limit in characters')
@click.option('--timestamps/--no-timestamps', default=None, help='Align sections to transcript timestamps')
def submit(url, user_id, style, audience, max_length, timestamps):
    """Process URL end to end, showing progress."""
    options = {
        'style': style,
        'target_audience': audience,
        'max_length': max_length,
        'include_timestamps': timestamps,
    }
    options = {k: v for k, v in options.items() if v is not None}

    async def process(manager: DatabaseManager):
        broadcaster = StatusBroadcaster()
        try:
            orchestrator = build_orchestrator(get_settings(), manager, broadcaster)
        except ValueError as e:
            raise click.ClickException(f"{e} (set it in the environment or .env)")
        submission = await orchestrator.submit(url, user_id, options or None)
        job_id = submission['job_id']
        click.echo(f"Job {job_id} created for video {submission['video_id']}")

        channel = broadcaster.subscribe(job_id)
        task = asyncio.create_task(orchestrator.process_job(job_id))
        try:
            with tqdm(total=100, desc="Processing", unit="%") as bar:
                while True:
                    event = await channel.get(timeout=1.0)
                    if event is None:
                        if task.done():
                            break
                        continue
                    bar.set_postfix_str(event.step)
                    bar.update(max(0, event.progress - bar.n))
                    if event.is_terminal:
                        break
            await task
        finally:
            broadcaster.unsubscribe(job_id, channel)

        return await orchestrator.job_store.get(job_id)

    job = _run(_with_database(process))
    if job.status == 'completed':
        click.echo(f"✅ Guide {job.guide_id} ready")
    else:
        raise click.ClickException(f"Job failed during {job.failed_stage}: {job.error}")


@cli.command()
@click.argument('job_id')
@click.option('--user', 'user_id', required=True)
def status(job_id, user_id):
    """Show the persisted state of a job."""
    async def fetch(manager):
        return await JobStore(manager).get_owned(job_id, user_id)

    job = _run(_with_database(fetch))
    click.echo(json.dumps(job.to_dict(), indent=2))


@cli.command()
@click.option('--user', 'user_id', required=True)
@click.option('--video-id', default=None, help='Only jobs for this video')
def jobs(user_id, video_id):
    """List a user's jobs."""
    async def fetch(manager):
        return await JobStore(manager).list_for_user(user_id, video_id=video_id)

    items = _run(_with_database(fetch))
    if not items:
        click.echo("No jobs found.")
        return

    click.echo(f"{'Job ID':<38} {'Video':<12} {'Status':<17} {'Progress':<8} Step")
    click.echo("-" * 95)
    for job in items:
        click.echo(f"{job.id:<38} {job.video_id:<12} {job.status:<17} {job.progress:<8} {job.step}")


@cli.command()
@click.option('--user', 'user_id', required=True)
@click.option('--video-id', default=None, help='Only guides for this video')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table')
def guides(user_id, video_id, output_format):
    """List a user's guides."""
    async def fetch(manager):
        return await GuideStorage(manager).list_guides(user_id, video_id=video_id)

    items = _run(_with_database(fetch))
    if output_format == 'json':
        click.echo(json.dumps([g.to_dict() for g in items], indent=2))
        return
    if not items:
        click.echo("No guides found.")
        return

    for guide in items:
        title = guide.title or '(untitled)'
        click.echo(f"{guide.id}  {guide.status:<10} {guide.video_id}  {title[:60]}")


@cli.command()
@click.argument('guide_id')
@click.option('--user', 'user_id', required=True)
def show(guide_id, user_id):
    """Print a guide as Markdown."""
    async def fetch(manager):
        return await GuideStorage(manager).get_guide(guide_id, user_id)

    guide = _run(_with_database(fetch))
    click.echo(f"# {guide.title}\n")
    if guide.summary:
        click.echo(f"{guide.summary}\n")
    for section in guide.sections:
        click.echo(f"## {section.title}\n")
        click.echo(f"{section.content}\n")
    if guide.keywords:
        click.echo(f"Keywords: {', '.join(guide.keywords)}")


@cli.command()
@click.option('--days', type=int, default=None, help='Remove finished jobs older than this (defaults to JOB_RETENTION_DAYS)')
def cleanup(days):
    """Delete old finished jobs."""
    days = days or get_settings().job_retention_days

    async def purge(manager):
        return await JobStore(manager).cleanup_old_jobs(days)

    removed = _run(_with_database(purge))
    click.echo(f"Removed {removed} job(s) older than {days} days")


if __name__ == '__main__':
    cli()
