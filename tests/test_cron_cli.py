"""Command line entry point for the periodic jobs."""
import json

import pytest

from revenue_kernel.jobs.cron import build_parser, main
from revenue_kernel.models.db.enums import QueueStatus
from conftest import load_row


def _run(capsys, argv, ctx):
    code = main(argv, ctx=ctx)
    out = capsys.readouterr().out.strip().splitlines()
    return code, json.loads(out[-1])


def test_upload_command(capsys, task_context, row_factory, db_session):
    row = row_factory()
    code, summary = _run(capsys, ["upload", "--limit", "5"], task_context)
    assert code == 0
    assert summary["command"] == "upload"
    assert summary["completed"] == 1
    assert load_row(db_session, row.id).status == QueueStatus.COMPLETED


def test_attempt_cap_command(capsys, task_context, row_factory):
    row_factory(provider_attempt_count=3, status=QueueStatus.RETRY)
    code, summary = _run(capsys, ["attempt-cap", "--max-attempts", "3"], task_context)
    assert code == 0
    assert summary == {"command": "attempt-cap", "ok": True, "failed": 1}


def test_recover_processing_command(capsys, task_context):
    code, summary = _run(capsys, ["recover-processing", "--min-age-minutes", "15"], task_context)
    assert code == 0
    assert summary["recovered"] == 0
    assert summary["reconciliation_jobs_recovered"] == 0


def test_reconcile_commands(capsys, task_context):
    code, summary = _run(capsys, ["reconcile-enqueue"], task_context)
    assert code == 0 and summary["enqueued"] == 0
    code, summary = _run(capsys, ["reconcile-run", "--limit", "5"], task_context)
    assert code == 0 and summary["processed"] == 0


def test_backfill_command(capsys, task_context):
    code, summary = _run(capsys, ["backfill", "--from", "2025-01", "--to", "2025-02", "--site-id", "site-a"], task_context)
    assert code == 0
    assert summary["enqueued"] == 2 and summary["periods"] == 2


def test_failing_command_exits_non_zero(capsys, task_context):
    code, summary = _run(capsys, ["backfill", "--from", "2020-01", "--to", "2025-01"], task_context)
    assert code == 1
    assert summary["ok"] is False
    assert summary["command"] == "backfill"
    assert "12" in summary["error"]


def test_lock_skip_is_not_a_failure(capsys, task_context, cron_lock):
    cron_lock.acquire("reconcile_run", 60)
    code, summary = _run(capsys, ["reconcile-run"], task_context)
    assert code == 0
    assert summary["skipped"] is True


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
