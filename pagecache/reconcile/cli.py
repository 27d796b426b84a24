"""CLI for page reconciliation and audit."""

import click
import json
from .audit import audit_document, list_documents_status, find_blank_documents
from .reconciler import Reconciler
from ..config import LOG_LEVEL
from ..conversion.jobs import JobManager
from ..db import get_session
from ..errors import PageCacheError, StorageUnavailable
from ..logging_config import configure_logging
from ..pages.store import PageStore
from ..storage import get_storage


@click.group()
def cli():
    configure_logging(LOG_LEVEL)


@cli.command()
@click.argument('document_id')
def reconcile(document_id):
    """Delete page records whose image is missing from storage.

    Documents with a queued or processing conversion are skipped.
    """
    reconciler = Reconciler(get_session(), get_storage())
    try:
        report = reconciler.reconcile(document_id)
    except StorageUnavailable as e:
        raise click.ClickException(f"Storage unavailable, nothing deleted: {e.message}")
    click.echo(json.dumps(report.to_dict(), indent=2))


@cli.command(name='reconcile-all')
def reconcile_all():
    """Reconcile every document that has page records."""
    results = Reconciler(get_session(), get_storage()).reconcile_all()
    click.echo(json.dumps(results, indent=2))


@cli.command()
@click.argument('document_id')
def audit(document_id):
    """Database-only audit: gaps, count mismatches, URL-shaped paths."""
    report = audit_document(get_session(), document_id)
    click.echo(json.dumps(report, indent=2, default=str))


@cli.command()
def status():
    """List all documents, their latest conversion status and page counts."""
    docs = list_documents_status(get_session())
    click.echo(json.dumps(docs, indent=2, default=str))


@cli.command()
def expired():
    """List documents whose cached pages are past their expiry."""
    for document_id in PageStore(get_session()).list_expired_documents():
        click.echo(document_id)


@cli.command()
@click.argument('document_id')
def refresh(document_id):
    """Extend the cache expiry of a document's pages."""
    count = PageStore(get_session()).refresh_expiry(document_id)
    click.echo(f"Refreshed {count} pages of {document_id}")


@cli.command()
@click.option('--include-suspicious', is_flag=True, help='Also list documents averaging under the suspicious threshold')
@click.option('--requeue', is_flag=True, help='Queue a reconversion for every flagged document')
@click.option('--priority', type=click.Choice(['high', 'normal', 'low']), default='low')
def blank(include_suspicious, requeue, priority):
    """List documents whose page images look blank (small average size)."""
    session = get_session()
    flagged = find_blank_documents(session, include_suspicious=include_suspicious)
    if requeue:
        jobs = JobManager(session, get_storage())
        for doc in flagged:
            try:
                job = jobs.request_conversion(doc["document_id"], priority=priority)
            except PageCacheError as e:
                doc["requeue_error"] = e.message
                continue
            doc["job_id"] = job.id
            doc["job_status"] = job.status.value
    click.echo(json.dumps(flagged, indent=2))


if __name__ == '__main__':
    cli()
