"""
Tests for the ark command-line client.

The agent is replaced by an httpx MockTransport; process management
(launcher, signals) is mocked.
"""

import json

import httpx
import pytest
import yaml
from typer.testing import CliRunner

from arkctl import cli

runner = CliRunner()


class FakeAgent:
    """Records requests and answers them from a route table."""

    def __init__(self, running=True):
        self.running = running
        self.requests = []
        self.routes = {}

    def route(self, method, path, status=200, body=None):
        self.routes[(method, path)] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.running:
            raise httpx.ConnectError("Connection refused", request=request)
        self.requests.append(request)
        if request.url.path == "/api/system/health":
            return httpx.Response(200, json={"status": "healthy", "version": "1.2.3"})
        if request.url.path == "/api/system/version":
            return httpx.Response(200, json={"version": "1.2.3", "commit": "abc", "build_date": "x"})
        status, body = self.routes.get((request.method, request.url.path), (404, {"error": "no route"}))
        return httpx.Response(status, json=body)

    def last_json(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / "config.yml")


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("ARK_AGENT_DATA", str(tmp_path / "data"))
    monkeypatch.delenv("ARK_NO_AUTO_START", raising=False)
    monkeypatch.delenv("ARK_CONFIG", raising=False)


@pytest.fixture
def agent(mocker, env):
    fake = FakeAgent()
    seen = {}

    def client(base_url, timeout=5.0):
        seen["base_url"] = base_url
        return httpx.Client(
            base_url=base_url, timeout=timeout, transport=httpx.MockTransport(fake.handler)
        )

    mocker.patch("arkctl.cli.agent_client", side_effect=client)
    mocker.patch("arkctl.cli.time.sleep")
    fake.seen = seen
    return fake


def invoke(config_path, *args, **kwargs):
    return runner.invoke(cli.app, ["--config", config_path, *args], **kwargs)


def test_version():
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert "Ark version" in result.stdout
    assert "Commit:" in result.stdout


# --- agent ---


def test_agent_status_running(agent, config_path):
    result = invoke(config_path, "agent", "status")
    assert result.exit_code == 0
    assert "Agent is running" in result.stdout
    assert "Version: 1.2.3" in result.stdout
    assert agent.seen["base_url"] == "http://127.0.0.1:8737"


def test_agent_status_uses_configured_port(agent, config_path):
    with open(config_path, "w") as f:
        yaml.dump({"agent": {"port": 9100}}, f)
    invoke(config_path, "agent", "status")
    assert agent.seen["base_url"] == "http://127.0.0.1:9100"


def test_agent_status_not_running(agent, config_path):
    agent.running = False
    result = invoke(config_path, "agent", "status")
    assert result.exit_code == 1
    assert "Agent is not running" in result.stdout


def test_agent_start_already_running(agent, config_path, mocker):
    start = mocker.patch("arkctl.cli.launcher.start")
    result = invoke(config_path, "agent", "start")
    assert result.exit_code == 0
    assert "already running" in result.stdout
    start.assert_not_called()


def test_agent_start_launches_and_waits(agent, config_path, mocker, tmp_path):
    agent.running = False

    def launch(*args, **kwargs):
        agent.running = True

    start = mocker.patch("arkctl.cli.launcher.start", side_effect=launch)
    result = invoke(config_path, "agent", "start")

    assert result.exit_code == 0, result.stdout
    start.assert_called_once()
    assert "Agent started successfully" in result.stdout
    assert str(tmp_path / "data" / "agent.log") in result.stdout


def test_agent_start_launch_error(agent, config_path, mocker):
    from ark_agent.errors import LaunchError

    agent.running = False
    mocker.patch("arkctl.cli.launcher.start", side_effect=LaunchError("ark-agent binary not found"))
    result = invoke(config_path, "agent", "start")
    assert result.exit_code == 1


def test_agent_stop_signals_lock_owner(agent, config_path, mocker, tmp_path):
    lookup = mocker.patch("arkctl.cli.locked_pid", return_value=4242)
    process = mocker.patch("arkctl.cli.psutil.Process")

    def stop(*args):
        agent.running = False

    process.return_value.send_signal.side_effect = stop
    process.return_value.terminate.side_effect = stop

    result = invoke(config_path, "agent", "stop")

    assert result.exit_code == 0, result.stdout
    process.assert_called_once_with(4242)
    lookup.assert_called_once_with(str(tmp_path / "data" / "agent.lock"))
    assert "Stopping agent (PID 4242)" in result.stdout
    assert "Agent stopped successfully" in result.stdout


def test_agent_stop_without_lock(agent, config_path, mocker):
    mocker.patch("arkctl.cli.locked_pid", return_value=None)
    result = invoke(config_path, "agent", "stop")
    assert result.exit_code == 1
    assert "lock file not found" in result.stdout


def test_agent_stop_not_running(agent, config_path):
    agent.running = False
    result = invoke(config_path, "agent", "stop")
    assert result.exit_code == 0
    assert "Agent is not running" in result.stdout


def test_no_auto_start(agent, config_path, mocker, monkeypatch):
    monkeypatch.setenv("ARK_NO_AUTO_START", "1")
    agent.running = False
    start = mocker.patch("arkctl.cli.launcher.start")

    result = invoke(config_path, "credentials", "list")

    assert result.exit_code == 1
    start.assert_not_called()


def test_auto_start(agent, config_path, mocker):
    agent.running = False
    agent.route("GET", "/api/credentials", body=[])

    def launch(*args, **kwargs):
        agent.running = True

    start = mocker.patch("arkctl.cli.launcher.start", side_effect=launch)
    result = invoke(config_path, "credentials", "list")

    assert result.exit_code == 0
    start.assert_called_once()
    assert "No credentials stored." in result.stdout


# --- credentials ---


def test_credentials_set_with_options(agent, config_path):
    agent.route("POST", "/api/credentials", body={"status": "success", "profile": "dev"})

    result = invoke(
        config_path,
        "credentials",
        "set",
        "dev",
        "--access-key-id",
        "AKIA1",
        "--secret-access-key",
        "s3cr3t",
        "--region",
        "eu-west-1",
    )

    assert result.exit_code == 0, result.stdout
    assert "Credentials stored for profile 'dev'" in result.stdout
    assert agent.last_json() == {
        "profile": "dev",
        "access_key_id": "AKIA1",
        "secret_access_key": "s3cr3t",
        "session_token": None,
        "region": "eu-west-1",
    }


def test_credentials_set_prompts(agent, config_path):
    agent.route("POST", "/api/credentials", body={"status": "success", "profile": "default"})

    result = invoke(config_path, "credentials", "set", "default", input="AKIA2\nhidden\n")

    assert result.exit_code == 0, result.stdout
    assert "hidden" not in result.stdout
    body = agent.last_json()
    assert body["access_key_id"] == "AKIA2"
    assert body["secret_access_key"] == "hidden"
    assert body["region"] == "us-east-1"


def test_credentials_set_agent_error(agent, config_path):
    agent.route("POST", "/api/credentials", status=400, body={"error": "profile: Field required"})
    result = invoke(
        config_path, "credentials", "set", "dev", "--access-key-id", "A", "--secret-access-key", "B"
    )
    assert result.exit_code == 1


def test_credentials_list(agent, config_path):
    agent.route(
        "GET",
        "/api/credentials",
        body=[{"profile": "default", "region": "us-east-1"}, {"profile": "dev", "region": "eu-west-1"}],
    )
    result = invoke(config_path, "credentials", "list")
    assert result.exit_code == 0
    assert "default  (region: us-east-1)" in result.stdout
    assert "dev  (region: eu-west-1)" in result.stdout


def test_credentials_delete(agent, config_path):
    agent.route("DELETE", "/api/credentials/dev", body={"status": "success"})
    result = invoke(config_path, "credentials", "delete", "dev")
    assert result.exit_code == 0
    assert "Deleted credentials for profile 'dev'" in result.stdout


def test_credentials_delete_unknown(agent, config_path):
    agent.route("DELETE", "/api/credentials/ghost", status=404, body={"error": "Profile not found"})
    result = invoke(config_path, "credentials", "delete", "ghost")
    assert result.exit_code == 1
    assert "Profile 'ghost' not found" in result.stdout


def test_credentials_validate(agent, config_path):
    agent.route(
        "POST",
        "/api/credentials/default/validate",
        body={
            "profile": "default",
            "account": "123456789012",
            "arn": "arn:aws:iam::123456789012:user/alice",
            "user_id": "AIDA",
            "cached": False,
        },
    )
    result = invoke(config_path, "credentials", "validate")
    assert result.exit_code == 0
    assert "123456789012" in result.stdout


# --- config ---


def test_config_init_and_get(env, config_path):
    result = invoke(config_path, "config", "init")
    assert result.exit_code == 0
    assert "Configuration initialized" in result.stdout

    with open(config_path) as f:
        assert yaml.safe_load(f)["agent"]["port"] == 8737

    result = invoke(config_path, "config", "get", "agent.port")
    assert result.exit_code == 0
    assert result.stdout.strip() == "8737"


def test_config_set_persists(env, config_path):
    result = invoke(config_path, "config", "set", "backend.url", "https://ark.example.edu")
    assert result.exit_code == 0
    assert "Set backend.url = https://ark.example.edu" in result.stdout

    result = invoke(config_path, "config", "get", "backend.url")
    assert result.stdout.strip() == "https://ark.example.edu"


@pytest.mark.parametrize(
    "args",
    [
        ["config", "get", "nope"],
        ["config", "set", "agent.port", "abc"],
        ["config", "set", "training.enabled", "sometimes"],
    ],
)
def test_config_errors(env, config_path, args):
    result = invoke(config_path, *args)
    assert result.exit_code == 1


def test_config_list(env, config_path):
    result = invoke(config_path, "config", "list")
    assert result.exit_code == 0
    assert f"Configuration file: {config_path}" in result.stdout
    assert "current_profile: default" in result.stdout


# --- s3 ---


def test_create_bucket(agent, config_path):
    agent.route(
        "POST",
        "/api/s3/buckets",
        status=201,
        body={
            "bucket_name": "my-research-data",
            "region": "us-west-2",
            "location": "http://my-research-data.s3.amazonaws.com/",
            "created_at": "2024-05-01T12:00:00Z",
        },
    )

    result = invoke(
        config_path, "s3", "create-bucket", "my-research-data", "--region", "us-west-2", "--versioning"
    )

    assert result.exit_code == 0, result.stdout
    assert "S3 bucket created successfully" in result.stdout
    assert "Created:   2024-05-01 12:00:00 UTC" in result.stdout
    body = agent.last_json()
    assert body["versioning_enabled"] is True
    assert body["encryption"] == {"type": "AES256", "kms_key_id": None}
    assert body["profile"] == "default"


def test_create_bucket_blocked(agent, config_path):
    agent.route(
        "POST",
        "/api/s3/buckets",
        status=403,
        body={
            "status": "blocked",
            "reason": "training_required",
            "required_modules": [
                {"id": "1", "name": "s3_basics", "title": "S3 Basics", "estimated_minutes": 15}
            ],
        },
    )

    result = invoke(config_path, "s3", "create-bucket", "my-bucket")

    assert result.exit_code == 1
    assert "Training required" in result.stdout
    assert "1. S3 Basics (15 minutes)" in result.stdout
    assert "ark training start s3_basics" in result.stdout


def test_create_bucket_server_error(agent, config_path):
    agent.route("POST", "/api/s3/buckets", status=500, body={"error": "bucket name already taken"})
    result = invoke(config_path, "s3", "create-bucket", "my-bucket")
    assert result.exit_code == 1


@pytest.mark.parametrize(
    "args",
    [
        ["AB"],
        ["my-bucket", "--encryption", "DES"],
        ["my-bucket", "--encryption", "aws:kms"],
    ],
)
def test_create_bucket_client_side_validation(agent, config_path, args):
    result = invoke(config_path, "s3", "create-bucket", *args)
    assert result.exit_code == 1
    assert agent.requests == []
