"""Tests for the command line entry points."""

import json
from unittest.mock import patch

from conftest import FakeWebserver
from simpledeploy.__main__ import main
from simpledeploy.webserver.base import ServerWebsite


def test_check_config_prints_effective_settings(tmp_path, capsys):
    config_file = tmp_path / "simpledeploy.yaml"
    config_file.write_text("port: 5443\npassword: hunter2\ndeployment_names:\n  allow: ['*']\n")

    assert main(["--config", str(config_file), "check-config"]) == 0

    data = json.loads(capsys.readouterr().out)
    assert data["port"] == 5443
    assert data["password"] == "[REDACTED]"
    assert data["deployment_names"]["allow"] == ["*"]


def test_check_config_reports_invalid_file(tmp_path, capsys):
    config_file = tmp_path / "broken.yaml"
    config_file.write_text("port: [unclosed\n")

    assert main(["--config", str(config_file), "check-config"]) == 2
    assert "ERROR" in capsys.readouterr().err


def test_websites_lists_sites(capsys):
    control = FakeWebserver([ServerWebsite(id=3, name="shop", state="Started", physical_path="/srv/shop")])
    with patch("simpledeploy.webserver.factory.create_webserver_control", return_value=control):
        assert main(["websites"]) == 0

    out = capsys.readouterr().out
    assert "3\tshop\tStarted\t/srv/shop" in out


def test_serve_is_default():
    with patch("simpledeploy.main.run") as run:
        assert main([]) == 0
    run.assert_called_once_with(None)
