"""Tests for the deployment pipeline stages."""

import io
import zipfile
from pathlib import Path

import pytest

from conftest import FakeScriptRunner, FakeWebserver, make_job
from simpledeploy.deploy import pipeline as pipeline_module
from simpledeploy.deploy.pipeline import DeploymentPipeline
from simpledeploy.deploy.job_log import JobLog
from simpledeploy.webserver.base import ServerWebsite


def site_policy(destination: Path, **options) -> dict:
    return {"allow": ["*"], "configurations": [{"name": "site", "path": str(destination), **options}]}


def run_job(pipeline: DeploymentPipeline, job):
    log = JobLog(job.job_id)
    result = pipeline.run(job, log)
    return result, log.text()


def zip_bytes(members: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return buffer.getvalue()


class TestPipelineOutcomes:
    def test_zero_artifacts_aborts(self, settings, fake_webserver):
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)

        result, log = run_job(pipeline, make_job(deployment_script="deploy.py"))

        assert result.success is False
        assert result.stage == "artifacts"
        assert "No artifacts provided for deployment!" in log
        assert "==Deployment aborted after" in log
        assert "==Deployment complete" not in log
        assert runner.runs == []

    def test_insufficient_disk_space_aborts_before_staging(self, make_settings, fake_webserver, working_folder):
        settings = make_settings(min_free_space=10 ** 18)
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        job = make_job(artifacts=[("deploy.py", b"print('x')")])
        result, log = run_job(pipeline, job)

        assert result.success is False
        assert result.stage == "precheck"
        assert "Insufficient disk space" in log
        assert not (working_folder / "Jobs" / "site" / job.job_id).exists()

    def test_artifact_bytes_are_staged_unchanged(self, settings, fake_webserver, working_folder):
        payload = bytes(range(256)) * 64
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)

        job = make_job(artifacts=[("payload.bin", payload), ("deploy.py", b"print('ok')")])
        result, log = run_job(pipeline, job)

        assert result.success is True, log
        staged = working_folder / "Jobs" / "site" / job.job_id / "payload.bin"
        assert staged.read_bytes() == payload
        assert "==Deployment started==" in log
        assert "==Deployment complete in" in log
        # payloads are dropped once written
        assert all(artifact.data == b"" for artifact in job.artifacts)

    def test_every_log_line_carries_job_and_stage(self, settings, fake_webserver):
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())
        job = make_job(artifacts=[("deploy.py", b"print('ok')")])
        _, log = run_job(pipeline, job)

        for line in log.splitlines():
            parts = line.split("|")
            assert parts[2] == job.job_id
            assert parts[3]

    def test_job_folder_removed_when_cleanup_enabled(self, make_settings, fake_webserver, working_folder):
        settings = make_settings(cleanup_after_deploy=True)
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())
        job = make_job(artifacts=[("deploy.py", b"print('ok')")])

        result, _ = run_job(pipeline, job)

        assert result.success is True
        assert not (working_folder / "Jobs" / "site" / job.job_id).exists()


class TestExtract:
    def test_corrupt_archive_aborts_before_script(self, make_settings, fake_webserver):
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(make_settings(), fake_webserver, script_runner=runner)

        job = make_job(artifacts=[("bad.zip", b"not a zip"), ("deploy.py", b"")], auto_extract=True)
        result, log = run_job(pipeline, job)

        assert result.success is False
        assert result.stage == "extract"
        assert "Error extracting zip file 'bad.zip'" in log
        assert "==Deployment aborted after" in log
        assert runner.runs == []


class TestScriptResolution:
    def test_autoextract_adopts_conventional_script_from_zip(self, make_settings, fake_webserver, destination, working_folder):
        settings = make_settings(deployment_names=site_policy(destination))
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)

        archive = zip_bytes({"deploy.py": "print('deploying')", "index.html": "<html></html>", "css/site.css": "body{}"})
        job = make_job(artifacts=[("release.zip", archive)], auto_extract=True, auto_copy=True)
        result, log = run_job(pipeline, job)

        assert result.success is True, log
        job_folder = working_folder / "Jobs" / "site" / job.job_id
        assert not (job_folder / "release.zip").exists()
        assert runner.runs[0][0] == job_folder / "deploy.py"
        assert (destination / "index.html").read_text() == "<html></html>"
        assert (destination / "css" / "site.css").exists()
        assert not (destination / "deploy.py").exists()

    def test_conventional_batch_script_used_without_inline_file(self, settings, fake_webserver, working_folder):
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)

        job = make_job(artifacts=[("site.txt", b"content"), ("deploy.bat", b"@echo off")])
        result, log = run_job(pipeline, job)

        job_folder = working_folder / "Jobs" / "site" / job.job_id
        assert result.success is True
        assert "No deployment script specified, using 'deploy.bat'" in log
        assert runner.runs[0][0] == job_folder / "deploy.bat"
        assert not (job_folder / settings.inline_script_filename).exists()

    def test_inline_script_written_when_no_artifact_matches(self, make_settings, fake_webserver, working_folder):
        settings = make_settings(inline_script_filename="deploy.py")
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)

        script = "import sys\nprint('inline ran')\n"
        job = make_job(artifacts=[("site.txt", b"content")], deployment_script=script)
        result, log = run_job(pipeline, job)

        inline = working_folder / "Jobs" / "site" / job.job_id / "deploy.py"
        assert result.success is True, log
        assert inline.read_text(encoding="utf-8") == script
        assert runner.runs[0][0] == inline

    def test_missing_declared_script_aborts(self, settings, fake_webserver):
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)

        job = make_job(artifacts=[("site.txt", b"content")], deployment_script="missing.ps1")
        result, log = run_job(pipeline, job)

        assert result.success is False
        assert result.stage == "script"
        assert "Could not determine deployment script" in log
        assert runner.runs == []

    def test_script_exit_code_recorded(self, settings, fake_webserver):
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner(exit_code=3))
        job = make_job(artifacts=[("deploy.py", b"")])

        result, _ = run_job(pipeline, job)

        assert result.exit_code == 3
        assert result.success is True


class TestDestination:
    def test_copy_excludes_script(self, make_settings, fake_webserver, destination):
        settings = make_settings(deployment_names=site_policy(destination, auto_copy=True))
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        job = make_job(artifacts=[("app.dll", b"\x00\x01"), ("install.py", b"")], deployment_script="install.py")
        result, log = run_job(pipeline, job)

        assert result.success is True, log
        assert (destination / "app.dll").read_bytes() == b"\x00\x01"
        assert not (destination / "install.py").exists()

    def test_auto_copy_skipped_without_flag(self, make_settings, fake_webserver, destination):
        settings = make_settings(deployment_names=site_policy(destination))
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        result, log = run_job(pipeline, make_job(artifacts=[("app.dll", b"x"), ("deploy.py", b"")]))

        assert result.success is True
        assert "Auto-copy of deployment files skipped" in log
        assert list(destination.iterdir()) == []

    def test_clean_on_empty_destination_is_idempotent(self, make_settings, fake_webserver, destination):
        settings = make_settings(deployment_names=site_policy(destination, clean_before_deploy=True))
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        for _ in range(2):
            result, log = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")]))
            assert result.success is True
            assert "0 entries deleted" in log

    def test_clean_removes_existing_content(self, make_settings, fake_webserver, destination):
        (destination / "old.txt").write_text("old")
        (destination / "bin").mkdir()
        (destination / "bin" / "old.dll").write_bytes(b"x")
        settings = make_settings(deployment_names=site_policy(destination, clean_before_deploy=True))
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        result, log = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")]))

        assert result.success is True
        assert "2 entries deleted" in log
        assert list(destination.iterdir()) == []

    def test_destination_from_webserver_when_not_configured(self, settings, destination):
        webserver = FakeWebserver([ServerWebsite(id=1, name="site", state="Started", physical_path=str(destination))])
        pipeline = DeploymentPipeline(settings, webserver, script_runner=FakeScriptRunner())

        job = make_job(artifacts=[("index.html", b"hi"), ("deploy.py", b"")], auto_copy=True, is_managed_website=True)
        result, log = run_job(pipeline, job)

        assert result.success is True, log
        assert (destination / "index.html").read_bytes() == b"hi"

    def test_clean_refuses_folder_holding_working_folder(self, make_settings, fake_webserver, working_folder, tmp_path):
        (tmp_path / "old.txt").write_text("old")
        settings = make_settings(deployment_names=site_policy(tmp_path, clean_before_deploy=True, auto_copy=True))
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        job = make_job(artifacts=[("deploy.py", b""), ("index.html", b"hi")])
        result, log = run_job(pipeline, job)

        assert result.success is True, log
        assert "Refusing to clean protected path" in log
        assert (tmp_path / "old.txt").exists()
        assert (working_folder / "Jobs" / "site" / job.job_id / "index.html").exists()
        assert (tmp_path / "index.html").read_bytes() == b"hi"


class TestManagedWebsite:
    def test_stop_and_start_around_script(self, settings):
        webserver = FakeWebserver([ServerWebsite(id=1, name="site", state="Started")])
        pipeline = DeploymentPipeline(settings, webserver, script_runner=FakeScriptRunner())

        job = make_job(artifacts=[("deploy.py", b"")], is_managed_website=True)
        result, log = run_job(pipeline, job)

        assert result.success is True
        assert webserver.calls == ["stop:site", "start:site"]
        assert log.index("stopped!") < log.index("Running deployment script") < log.index("started!")

    def test_domain_override_targets_site(self, settings):
        webserver = FakeWebserver([ServerWebsite(id=2, name="example.com", state="Started")])
        pipeline = DeploymentPipeline(settings, webserver, script_runner=FakeScriptRunner())

        job = make_job(artifacts=[("deploy.py", b"")], is_managed_website=True, domain="example.com")
        result, _ = run_job(pipeline, job)

        assert result.success is True
        assert webserver.calls == ["stop:example.com", "start:example.com"]

    def test_unmanaged_website_is_left_alone(self, settings, fake_webserver):
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        result, _ = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")]))

        assert result.success is True
        assert fake_webserver.calls == []

    def test_stop_failure_is_degraded(self, settings):
        webserver = FakeWebserver(succeed=False)
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, webserver, script_runner=runner)

        result, log = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")], is_managed_website=True))

        assert result.success is True
        assert "could not be found in web server" in log
        assert "Failed to stop website 'site'!" in log
        assert len(runner.runs) == 1


class TestBackup:
    def test_backup_created_and_rotated(self, make_settings, fake_webserver, destination, working_folder):
        (destination / "index.html").write_text("v1")
        settings = make_settings(deployment_names=site_policy(destination, backup=True), max_backup_files=2)
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        jobs = [make_job(artifacts=[("deploy.py", b"")]) for _ in range(3)]
        for job in jobs:
            result, log = run_job(pipeline, job)
            assert result.success is True, log

        backups = sorted((working_folder / "Backups" / "site").glob("*.zip"))
        assert len(backups) == 2
        for archive in backups:
            assert archive.name.startswith("site_")
            with zipfile.ZipFile(archive) as zf:
                assert zf.read("index.html") == b"v1"

    def test_backup_failure_aborts_before_script(self, make_settings, fake_webserver, destination, monkeypatch):
        (destination / "index.html").write_text("v1")
        settings = make_settings(deployment_names=site_policy(destination, backup=True, clean_before_deploy=True))
        runner = FakeScriptRunner()
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)

        def broken_backup(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(pipeline_module, "create_backup", broken_backup)
        result, log = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")]))

        assert result.success is False
        assert result.stage == "backup"
        assert "deployment cancelled" in log
        assert runner.runs == []
        # destination untouched
        assert (destination / "index.html").read_text() == "v1"

    def test_missing_destination_skips_backup(self, make_settings, fake_webserver, tmp_path):
        settings = make_settings(deployment_names=site_policy(tmp_path / "absent", backup=True))
        pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

        result, log = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")]))

        assert result.success is True
        assert "Backup skipped" in log


def test_unexpected_error_is_contained(settings, fake_webserver, monkeypatch):
    pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=FakeScriptRunner())

    def explode(ctx):
        raise RuntimeError("boom")

    monkeypatch.setattr(pipeline, "_resolve_domain", explode)
    result, log = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")]))

    assert result.success is False
    assert result.stage == "domain"
    assert "boom" in log
    assert "==Deployment aborted after" in log


def test_run_script_without_resolved_script_aborts(settings, fake_webserver, monkeypatch):
    runner = FakeScriptRunner()
    pipeline = DeploymentPipeline(settings, fake_webserver, script_runner=runner)
    monkeypatch.setattr(pipeline, "_resolve_script", lambda ctx: None)

    result, log = run_job(pipeline, make_job(artifacts=[("deploy.py", b"")]))

    assert result.success is False
    assert result.stage == "run-script"
    assert "No deployment script to run" in log
    assert runner.runs == []


@pytest.mark.parametrize(
    "value, expected",
    [
        ("deploy.ps1", True),
        ("scripts/install.sh", True),
        ("Write-Host 'hello'", False),
        ("echo hi", False),
        ("deploy", False),
    ],
)
def test_looks_like_filename(value, expected):
    assert pipeline_module._looks_like_filename(value) is expected


def test_clean_guard_covers_roots_working_and_job_folders(tmp_path):
    working = tmp_path / "work"
    job_folder = working / "Jobs" / "site" / "AbC123"

    assert pipeline_module._is_unsafe_to_clean(Path(tmp_path.anchor), working, job_folder)
    assert pipeline_module._is_unsafe_to_clean(tmp_path, working, job_folder)
    assert pipeline_module._is_unsafe_to_clean(working, working, job_folder)
    assert pipeline_module._is_unsafe_to_clean(job_folder, working, job_folder)
    assert pipeline_module._is_unsafe_to_clean(job_folder / "out", working, job_folder)
    assert not pipeline_module._is_unsafe_to_clean(tmp_path / "site", working, job_folder)
