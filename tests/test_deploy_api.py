"""Tests for the HTTP API."""

import time

import pytest
from fastapi.testclient import TestClient

from simpledeploy import __version__
from simpledeploy.main import create_app


@pytest.fixture
def client_factory(make_settings):
    clients = []

    def _make(**overrides) -> TestClient:
        app = create_app(make_settings(**overrides))
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


def script_file(body: str, name: str = "deploy.py"):
    return ("Artifacts", (name, body.encode("utf-8"), "application/octet-stream"))


def wait_for_job(client: TestClient, job_id: str, timeout: float = 15.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/deploy/jobs/{job_id}").json()
        if body["state"] == "completed":
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not complete")


class TestStatusEndpoints:
    def test_deploy_status(self, client_factory):
        client = client_factory(deployment_names={"allow": ["site", "api"]})

        response = client.get("/deploy")

        assert response.status_code == 200
        assert response.json() == {"status": "Running", "version": __version__, "allowed": ["site", "api"]}

    def test_health_and_info(self, client_factory):
        client = client_factory()

        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/runtime/health").json()["version"] == __version__
        info = client.get("/runtime/info").json()
        assert info["status"] == "healthy"
        assert info["queue_depth"] == 0

    def test_index_page(self, client_factory):
        client = client_factory()

        response = client.get("/")

        assert response.status_code == 200
        assert "SimpleDeploy" in response.text

    def test_websites_empty_without_webserver(self, client_factory):
        client = client_factory()

        assert client.get("/deploy/websites").json() == []

    def test_metrics_exposed(self, client_factory):
        client = client_factory()
        client.get("/deploy")

        response = client.get("/metrics/")

        assert response.status_code == 200
        assert "simpledeploy_http_requests_total" in response.text


class TestSubmission:
    def test_non_interactive_submission_is_queued(self, client_factory):
        client = client_factory()

        response = client.post(
            "/deploy",
            data={"DeploymentName": "site"},
            files=[script_file("print('hello')")],
        )

        body = response.json()
        assert response.status_code == 200, body
        assert body["isSuccess"] is True
        assert body["log"] == ""
        status = wait_for_job(client, body["jobId"])
        assert status["success"] is True
        assert "SCRIPT| hello" in status["log"]

    def test_website_alias_accepted(self, client_factory):
        client = client_factory()

        response = client.post("/deploy", data={"Website": "site"}, files=[script_file("print('x')")])

        assert response.status_code == 200
        assert response.json()["isSuccess"] is True

    def test_interactive_returns_full_log(self, client_factory):
        client = client_factory()

        response = client.post(
            "/deploy",
            data={"DeploymentName": "site", "Interactive": "true", "InteractiveTimeout": "30"},
            files=[script_file("print('hello from script')")],
        )

        body = response.json()
        assert body["isSuccess"] is True, body
        assert "==Deployment started==" in body["log"]
        assert "SCRIPT| hello from script" in body["log"]
        assert "==Deployment complete in" in body["log"]

    def test_interactive_failure_reported(self, client_factory):
        client = client_factory()

        response = client.post("/deploy", data={"DeploymentName": "site", "Interactive": "true"})

        body = response.json()
        assert response.status_code == 200
        assert body["isSuccess"] is False
        assert "No artifacts provided for deployment!" in body["log"]
        assert "==Deployment aborted after" in body["log"]

    def test_interactive_timeout_returns_snapshot(self, client_factory):
        client = client_factory()

        response = client.post(
            "/deploy",
            data={"DeploymentName": "site", "Interactive": "true", "InteractiveTimeout": "0.5"},
            files=[script_file("import time\ntime.sleep(3)\nprint('finished')\n")],
        )

        body = response.json()
        assert "Timeout of 0.5 seconds exceeded" in body["log"]
        assert "==Deployment complete" not in body["log"]

        status = wait_for_job(client, body["jobId"])
        assert "==Deployment complete in" in status["log"]

    def test_unknown_job_is_404(self, client_factory):
        client = client_factory()

        response = client.get("/deploy/jobs/missing")

        assert response.status_code == 404
        assert response.json()["isSuccess"] is False


class TestIntakeRejections:
    def test_name_not_in_allow_list(self, client_factory):
        client = client_factory(deployment_names={"allow": ["other"]})

        response = client.post("/deploy", data={"DeploymentName": "site"}, files=[script_file("")])

        assert response.status_code == 400
        assert "not configured for deployment" in response.json()["message"]

    def test_allow_list_is_case_insensitive(self, client_factory):
        client = client_factory(deployment_names={"allow": ["SITE"]})

        response = client.post("/deploy", data={"DeploymentName": "site"}, files=[script_file("")])

        assert response.status_code == 200

    @pytest.mark.parametrize("name", ["", "../escape", "a/b"])
    def test_invalid_names_rejected(self, client_factory, name):
        client = client_factory()

        response = client.post("/deploy", data={"DeploymentName": name}, files=[script_file("")])

        assert response.status_code == 400

    def test_oversized_deployment_rejected(self, client_factory):
        client = client_factory(max_deployment_size=10)

        response = client.post("/deploy", data={"DeploymentName": "site"}, files=[script_file("x" * 100)])

        assert response.status_code == 413
        assert response.json()["isSuccess"] is False

    def test_oversized_upload_rejected_without_reading_it(self, client_factory, monkeypatch):
        from starlette.datastructures import UploadFile

        reads = []
        original_read = UploadFile.read

        async def recording_read(self, size=-1):
            reads.append(self.filename)
            return await original_read(self, size)

        monkeypatch.setattr(UploadFile, "read", recording_read)
        client = client_factory(max_deployment_size=10)

        response = client.post("/deploy", data={"DeploymentName": "site"}, files=[script_file("x" * 100, "big.bin")])

        assert response.status_code == 413
        assert "big.bin" not in reads

    def test_token_required_when_configured(self, client_factory):
        client = client_factory(auth_token="tok")

        denied = client.post("/deploy", data={"DeploymentName": "site"}, files=[script_file("")])
        allowed = client.post(
            "/deploy",
            data={"DeploymentName": "site"},
            files=[script_file("")],
            headers={"X-Token": "tok"},
        )

        assert denied.status_code == 401
        assert allowed.status_code == 200

    def test_user_credentials_accepted(self, client_factory):
        client = client_factory(username="deploy", password="s3cret")

        response = client.post(
            "/deploy",
            data={"DeploymentName": "site"},
            files=[script_file("")],
            headers={"X-Username": "deploy", "X-Password": "s3cret"},
        )

        assert response.status_code == 200

    def test_ip_gate_blocks_unlisted_clients(self, client_factory):
        client = client_factory(ip_whitelist="10.0.0.1")

        assert client.get("/deploy").status_code == 403
        assert client.get("/").status_code == 200
        assert client.get("/index.html").status_code == 200
