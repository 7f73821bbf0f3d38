from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from smartx_orchestrator.main import smartx

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Operator Commands"),
]


def _env(tmp_path: Path) -> dict[str, str]:
    return {
        "SMARTX_BLOB_ROOT": str(tmp_path / "blobs"),
        "SMARTX_COMPLETION_PROVIDER": "echo",
        "SMARTX_WORKER_ID": "cli-worker",
        "SMARTX_LOG_LEVEL": "WARNING",
    }


def test_document_pipeline_via_cli(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    env = _env(tmp_path)
    meaning = tmp_path / "blobs" / "meaning" / "acme" / "prev.json"
    meaning.parent.mkdir(parents=True)
    meaning.write_text(json.dumps({"summary": "Ship on Friday"}), encoding="utf-8")
    runner = CliRunner()

    upsert = runner.invoke(
        smartx,
        [
            "tenants",
            "upsert",
            "--db-path",
            str(db_path),
            "--tenant-id",
            "acme",
            "--name",
            "Acme",
            "--doc",
        ],
        env=env,
    )
    assert upsert.exit_code == 0, upsert.output
    assert "Tenant saved: id=acme name=Acme meet=True doc=True code=False" in upsert.output

    submit = runner.invoke(
        smartx,
        [
            "jobs",
            "submit",
            "--db-path",
            str(db_path),
            "--tenant-id",
            "acme",
            "--project-id",
            "proj-1",
            "--type",
            "document_pipeline",
            "--payload",
            json.dumps({"meaning_key": "meaning/acme/prev.json", "document_type": "Report"}),
        ],
        env=env,
    )
    assert submit.exit_code == 0, submit.output
    match = re.search(r"Master job submitted: id=(\S+) type=DOCUMENT_PIPELINE", submit.output)
    assert match is not None
    master_job_id = match.group(1)

    work = runner.invoke(
        smartx,
        ["worker", "run", "--db-path", str(db_path), "--queue", "smartx:document"],
        env=env,
    )
    assert work.exit_code == 0, work.output
    assert "Worker cli-worker on smartx:document" in work.output
    assert "processed=1 succeeded=1 failed=0" in work.output

    inspect = runner.invoke(
        smartx,
        [
            "jobs",
            "inspect",
            "--db-path",
            str(db_path),
            "--tenant-id",
            "acme",
            "--master-job-id",
            master_job_id,
        ],
        env=env,
    )
    assert inspect.exit_code == 0, inspect.output
    assert "Status: SUCCESS" in inspect.output
    assert f"documents/acme/{master_job_id}.json" in inspect.output
    assert (tmp_path / "blobs" / "documents" / "acme" / f"{master_job_id}.json").is_file()

    listing = runner.invoke(
        smartx,
        ["jobs", "list", "--db-path", str(db_path), "--tenant-id", "acme", "--status", "success"],
        env=env,
    )
    assert listing.exit_code == 0, listing.output
    assert "Master jobs: 1" in listing.output

    stats = runner.invoke(smartx, ["queue", "stats", "--db-path", str(db_path)], env=env)
    assert stats.exit_code == 0, stats.output
    assert "smartx:document state=acked count=1" in stats.output


def test_submit_errors_exit_non_zero(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    env = _env(tmp_path)
    runner = CliRunner()
    runner.invoke(
        smartx,
        ["tenants", "upsert", "--db-path", str(db_path), "--tenant-id", "acme", "--name", "Acme"],
        env=env,
    )
    base = ["jobs", "submit", "--db-path", str(db_path), "--tenant-id", "acme"]
    base += ["--project-id", "p"]
    code_payload = json.dumps({"document_key": "d", "target_language": "go"})

    disabled = runner.invoke(
        smartx,
        [*base, "--type", "CODE_PIPELINE", "--payload", code_payload],
        env=env,
    )
    bad_json = runner.invoke(
        smartx,
        [*base, "--type", "MEETING_PIPELINE", "--payload", "{not json"],
        env=env,
    )
    missing_field = runner.invoke(
        smartx,
        [*base, "--type", "MEETING_PIPELINE", "--payload", '{"meeting_id": "m-1"}'],
        env=env,
    )

    assert disabled.exit_code == 1
    assert "has_code" in disabled.output
    assert bad_json.exit_code == 1
    assert "--payload is not valid JSON" in bad_json.output
    assert missing_field.exit_code == 1
    assert "audio_file_key" in missing_field.output

    listing = runner.invoke(
        smartx,
        ["jobs", "list", "--db-path", str(db_path), "--tenant-id", "acme"],
        env=env,
    )
    assert "Master jobs: 0" in listing.output


def test_tenant_and_retention_commands(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    env = _env(tmp_path)
    runner = CliRunner()
    runner.invoke(
        smartx,
        ["tenants", "upsert", "--db-path", str(db_path), "--tenant-id", "acme", "--name", "Acme"],
        env=env,
    )

    tier = runner.invoke(
        smartx,
        [
            "tenants",
            "apply-tier",
            "--db-path",
            str(db_path),
            "--tenant-id",
            "acme",
            "--tier",
            "enterprise",
        ],
        env=env,
    )
    assert tier.exit_code == 0, tier.output
    assert (
        "Tenant acme retention: transcripts=unlimited repositories=unlimited jobs=365d"
        in tier.output
    )

    listing = runner.invoke(smartx, ["tenants", "list", "--db-path", str(db_path)], env=env)
    assert "Tenants: 1" in listing.output

    backfill = runner.invoke(
        smartx,
        ["tenants", "backfill-features", "--db-path", str(db_path)],
        env=env,
    )
    assert "Tenants backfilled: 0" in backfill.output

    sweep = runner.invoke(
        smartx,
        ["retention", "sweep", "--db-path", str(db_path), "--dry-run"],
        env=env,
    )
    assert sweep.exit_code == 0, sweep.output
    assert "Retention sweep (dry run)" in sweep.output
    assert "tenant=acme transcripts skipped (unlimited)" in sweep.output

    stats = runner.invoke(
        smartx,
        ["retention", "stats", "--db-path", str(db_path), "--tenant-id", "acme"],
        env=env,
    )
    assert stats.exit_code == 0, stats.output
    assert "Meetings: active=0 deleted=0" in stats.output

    unknown = runner.invoke(
        smartx,
        ["retention", "stats", "--db-path", str(db_path), "--tenant-id", "nobody"],
        env=env,
    )
    assert unknown.exit_code == 1
    assert "Tenant not found: nobody" in unknown.output
