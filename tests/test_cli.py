import json

from click.testing import CliRunner

from pagecache.conversion import cli as conversion_cli
from pagecache.reconcile import cli as reconcile_cli
from pagecache.conversion.jobs import JobManager
from pagecache.pages.store import PageStore, page_storage_path

from conftest import put_page_objects


def _patch(monkeypatch, module, session, storage):
    monkeypatch.setattr(module, "get_session", lambda: session)
    monkeypatch.setattr(module, "get_storage", lambda: storage)
    monkeypatch.setattr(module, "configure_logging", lambda level: None)


def test_reconcile_command(monkeypatch, session, storage, document):
    _patch(monkeypatch, reconcile_cli, session, storage)
    store = PageStore(session)
    for n in (1, 2):
        store.write_page(document.id, n, page_storage_path(document.user_id, document.id, n))
    put_page_objects(storage, document, [1])

    result = CliRunner().invoke(reconcile_cli.cli, ["reconcile", document.id])
    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["checked"] == 2
    assert report["deleted"] == 1


def test_status_and_audit_commands(monkeypatch, session, storage, document):
    _patch(monkeypatch, reconcile_cli, session, storage)
    runner = CliRunner()
    status = json.loads(runner.invoke(reconcile_cli.cli, ["status"]).output)
    assert status[0]["document_id"] == document.id
    audit = json.loads(runner.invoke(reconcile_cli.cli, ["audit", document.id]).output)
    assert audit["overall"] == "pass"


def test_request_and_status_commands(monkeypatch, session, storage, document):
    _patch(monkeypatch, conversion_cli, session, storage)
    monkeypatch.setattr(conversion_cli, "ensure_paths", lambda: None)
    runner = CliRunner()

    result = runner.invoke(conversion_cli.cli, ["request", document.id, "--priority", "high"])
    assert result.exit_code == 0, result.output
    queued = json.loads(result.output)
    assert queued["status"] == "queued"
    assert queued["priority"] == "high"

    result = runner.invoke(conversion_cli.cli, ["request", "missing"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_work_once_on_empty_queue(monkeypatch, session, storage):
    _patch(monkeypatch, conversion_cli, session, storage)
    monkeypatch.setattr(conversion_cli, "ensure_paths", lambda: None)
    result = CliRunner().invoke(conversion_cli.cli, ["work", "--once"])
    assert result.exit_code == 0
    assert "Queue is empty" in result.output


def test_exclusive_request_command(monkeypatch, session, storage, document):
    _patch(monkeypatch, conversion_cli, session, storage)
    monkeypatch.setattr(conversion_cli, "ensure_paths", lambda: None)
    runner = CliRunner()
    assert runner.invoke(conversion_cli.cli, ["request", document.id]).exit_code == 0
    result = runner.invoke(conversion_cli.cli, ["request", document.id, "--exclusive"])
    assert result.exit_code != 0
    assert "already has queued job" in result.output


def test_blank_command_lists_and_requeues(monkeypatch, session, storage, document):
    _patch(monkeypatch, reconcile_cli, session, storage)
    store = PageStore(session)
    for n in (1, 2):
        store.write_page(document.id, n, page_storage_path(document.user_id, document.id, n), file_size=1500)
    runner = CliRunner()

    listed = json.loads(runner.invoke(reconcile_cli.cli, ["blank"]).output)
    assert [d["document_id"] for d in listed] == [document.id]
    assert listed[0]["classification"] == "blank"
    assert "job_id" not in listed[0]

    result = runner.invoke(reconcile_cli.cli, ["blank", "--requeue"])
    assert result.exit_code == 0, result.output
    requeued = json.loads(result.output)
    assert requeued[0]["job_status"] == "queued"
    job = JobManager(session, storage).get_active_job(document.id)
    assert job.id == requeued[0]["job_id"]
    assert job.priority.value == "low"
