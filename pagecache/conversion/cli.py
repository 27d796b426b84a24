import json
import time

import click

from .ingest import ingest_document
from .jobs import JobManager
from .worker import ConversionWorker
from ..config import ensure_paths, LOG_LEVEL, JOB_RETENTION_DAYS
from ..db import get_session, init_db
from ..db.models import User
from ..errors import PageCacheError
from ..logging_config import configure_logging
from ..storage import get_storage


@click.group()
def cli():
    configure_logging(LOG_LEVEL)
    ensure_paths()


@cli.command()
def initdb():
    """Create the page cache tables."""
    init_db()
    click.echo("Tables created")


@cli.command()
@click.argument('user_id')
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--title', default=None, help='Document title (defaults to the file name)')
@click.option('--convert/--no-convert', default=True, help='Queue a conversion job right away')
def ingest(user_id, file_path, title, convert):
    """Upload an original file for USER_ID and register the document."""
    session = get_session()
    if session.get(User, user_id) is None:
        raise click.ClickException(f"User {user_id} not found")
    storage = get_storage()
    doc = ingest_document(session, storage, user_id, file_path, title=title)
    click.echo(f"Ingested document_id={doc.id} path={doc.storage_path} pages={doc.page_count}")
    if convert and doc.is_pdf:
        job = JobManager(session, storage).request_conversion(doc.id)
        click.echo(f"Queued job_id={job.id}")


@cli.command()
@click.argument('document_id')
@click.option('--priority', type=click.Choice(['high', 'normal', 'low']), default='normal')
@click.option('--exclusive', is_flag=True, help='Fail instead of reusing an active job')
def request(document_id, priority, exclusive):
    """Queue a conversion for a document (returns the active job if one exists)."""
    session = get_session()
    jobs = JobManager(session, get_storage())
    try:
        job = jobs.request_conversion(document_id, priority=priority, exclusive=exclusive)
    except PageCacheError as e:
        raise click.ClickException(e.message)
    click.echo(json.dumps(jobs.get_progress(job.document_id), indent=2, default=str))


@cli.command()
@click.argument('document_id')
def status(document_id):
    """Show conversion progress for a document."""
    progress = JobManager(get_session(), get_storage()).get_progress(document_id)
    if progress is None:
        click.echo(f"Document {document_id} has no conversion jobs")
        return
    click.echo(json.dumps(progress, indent=2, default=str))


@cli.command()
@click.option('--once', is_flag=True, help='Process at most one job and exit')
@click.option('--poll-interval', default=5.0, help='Seconds to sleep when the queue is empty')
def work(once, poll_interval):
    """Process queued conversion jobs."""
    worker = ConversionWorker(get_session(), get_storage())
    while True:
        job = worker.run_once()
        if job is not None:
            click.echo(f"Job {job.id} for {job.document_id}: {job.status.value}"
                       + (f" ({job.error_message})" if job.error_message else ""))
        if once:
            if job is None:
                click.echo("Queue is empty")
            return
        if job is None:
            time.sleep(poll_interval)


@cli.command()
@click.option('--hours', default=24, help='Window for rates and averages')
def metrics(hours):
    """Queue depth, success rate and average processing time."""
    report = JobManager(get_session(), get_storage()).metrics(window_hours=hours)
    click.echo(json.dumps(report, indent=2))


@cli.command()
@click.option('--days', default=JOB_RETENTION_DAYS, help='Delete finished jobs older than this')
def cleanup(days):
    """Remove old finished jobs (each document keeps its latest job)."""
    removed = JobManager(get_session(), get_storage()).cleanup_old_jobs(older_than_days=days)
    click.echo(f"Removed {removed} jobs")


if __name__ == '__main__':
    cli()
