"""Tests for SchedulerService, the scheduled jobs and the ``run-job`` CLI command."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from signflow.models import db
from signflow.models.document import Document
from signflow.models.scheduling import ScheduledJob
from signflow.models.signature import SignatureRecord
from signflow.services.scheduler_service import SchedulerService, get_registered_jobs
from signflow.utils.helpers import utcnow

JOB_NAMES = {"signature_expiration_sweep", "signature_reminders", "provider_event_retry"}


@pytest.fixture()
def jobs():
    SchedulerService.ensure_jobs_registered()
    return {j.job_name: j for j in ScheduledJob.query.all()}


class TestRegistry:

    def test_all_jobs_registered(self):
        assert set(get_registered_jobs()) == JOB_NAMES

    def test_ensure_creates_missing_rows_once(self):
        created = SchedulerService.ensure_jobs_registered()
        assert {j.job_name for j in created} == JOB_NAMES
        assert SchedulerService.ensure_jobs_registered() == []
        sweep = ScheduledJob.query.filter_by(job_name="signature_expiration_sweep").one()
        assert sweep.schedule_config["description"] == "Daily at midnight"
        assert sweep.description == "Expire pending signature records whose expiry has passed."

    def test_list_jobs(self, jobs):
        listed = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert set(listed) == JOB_NAMES
        assert listed["signature_reminders"]["db_record"]["is_enabled"] is True


class TestRunJob:

    def test_unknown_job(self):
        result = SchedulerService.run_job("nightly_backup")
        assert result["status"] == "error"

    def test_run_records_history(self, jobs):
        result = SchedulerService.run_job("signature_expiration_sweep")
        assert result["status"] == "success"
        assert result["result"] == {"expired": 0, "documents": []}
        status = SchedulerService.get_job_status("signature_expiration_sweep")
        assert status["run_count"] == 1
        assert status["last_run_status"] == "success"

    def test_disabled_job_skipped_unless_forced(self, jobs):
        SchedulerService.toggle_job("signature_reminders", False)
        with patch("signflow.services.workflow_service.send_automatic_reminders") as fn:
            assert SchedulerService.run_job("signature_reminders")["status"] == "skipped"
        fn.assert_not_called()

        forced = SchedulerService.run_job("signature_reminders", force=True)
        assert forced["status"] == "success"
        assert forced["result"] == {"reminded": 0}
        assert SchedulerService.get_job_status("signature_reminders")["status"] == "paused"

    def test_failing_job_is_recorded(self, jobs):
        with patch("signflow.services.signature_service.expire_overdue_records",
                   side_effect=RuntimeError("boom")):
            result = SchedulerService.run_job("signature_expiration_sweep")
        assert result["status"] == "failed"
        assert result["error"] == "boom"
        status = SchedulerService.get_job_status("signature_expiration_sweep")
        assert status["error_count"] == 1
        assert status["last_error"] == "boom"

    def test_toggle_unknown_job(self):
        assert SchedulerService.toggle_job("nightly_backup", True) is None


class TestJobs:

    def test_expiration_sweep_job(self, jobs, dispatched_document, records):
        SignatureRecord.query.filter_by(id=records["a"].id).update(
            {"expires_at": utcnow() - timedelta(minutes=5)})
        db.session.commit()

        result = SchedulerService.run_job("signature_expiration_sweep")

        assert result["result"] == {"expired": 1, "documents": [dispatched_document.id]}
        assert db.session.get(SignatureRecord, records["a"].id).status == "expire"
        assert db.session.get(SignatureRecord, records["b"].id).status == "en_attente"
        assert db.session.get(Document, dispatched_document.id).status == "en_attente_signature"

    def test_provider_event_retry_job(self, jobs):
        result = SchedulerService.run_job("provider_event_retry")
        assert result["status"] == "success"
        assert result["result"] == {"retried": 0, "processed": 0, "failed": 0}


class TestCli:

    def test_run_job_command(self, app, jobs):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["run-job", "provider_event_retry"])
        assert result.exit_code == 0
        assert "provider_event_retry: success" in result.output

    def test_run_unknown_job_command(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["run-job", "nightly_backup"])
        assert result.exit_code == 1
        assert "nightly_backup: error" in result.output
