# CLI tool for the Ark agent (Typer)

"""
ark: command-line client for the local Ark agent.
"""
import os
import signal
import time
from datetime import datetime
from typing import Optional

import httpx
import psutil
import typer

from ark_agent import __build_date__, __commit__, __version__, launcher
from ark_agent.config import AgentSettings, Config, ConfigError, default_data_dir
from ark_agent.errors import LaunchError
from ark_agent.lockfile import locked_pid
from ark_agent.logging import setup_logging
from ark_agent.provider import ENCRYPTION_TYPES, bucket_name_problems

app = typer.Typer(help="Ark - AWS Research Kit for academic institutions", no_args_is_help=True)
agent_app = typer.Typer(help="Manage the Ark agent", no_args_is_help=True)
credentials_app = typer.Typer(help="Manage AWS credentials", no_args_is_help=True)
config_app = typer.Typer(help="Manage Ark configuration", no_args_is_help=True)
s3_app = typer.Typer(help="Manage AWS S3 resources", no_args_is_help=True)
app.add_typer(agent_app, name="agent")
app.add_typer(credentials_app, name="credentials")
app.add_typer(config_app, name="config")
app.add_typer(s3_app, name="s3")

AGENT_START_TIMEOUT = 10.0
AUTO_START_TIMEOUT = 5.0
STOP_TIMEOUT = 10.0
POLL_INTERVAL = 0.2
REQUEST_TIMEOUT = 5.0


def exit_with_error(message: str):
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def load_config(ctx: typer.Context) -> Config:
    try:
        return Config((ctx.obj or {}).get("config_path"))
    except ConfigError as e:
        exit_with_error(f"load config: {e}")


def agent_url(ctx: typer.Context) -> str:
    """Base URL of the agent, from agent.host/agent.port."""
    config = load_config(ctx)
    return f"http://{config['agent']['host']}:{config['agent']['port']}"


def local_paths() -> AgentSettings:
    """Lock and log file locations of the local agent's data directory."""
    return AgentSettings(data_dir=default_data_dir())


def agent_client(base_url: str, timeout: float = REQUEST_TIMEOUT) -> httpx.Client:
    return httpx.Client(base_url=base_url, timeout=timeout)


def is_agent_running(base_url: str) -> bool:
    try:
        with agent_client(base_url, timeout=1.0) as client:
            return client.get("/api/system/health").status_code == 200
    except httpx.HTTPError:
        return False


def get_agent_version(base_url: str) -> Optional[str]:
    try:
        with agent_client(base_url, timeout=1.0) as client:
            return client.get("/api/system/version").json().get("version")
    except (httpx.HTTPError, ValueError):
        return None


def wait_for(condition, timeout: float, progress: bool = True) -> bool:
    """Poll condition() until it holds or timeout seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        if progress:
            typer.echo(".", nl=False)
        time.sleep(POLL_INTERVAL)
    return condition()


def ensure_agent_running(ctx: typer.Context) -> str:
    """
    Make sure the agent answers on its health endpoint, starting it unless
    ARK_NO_AUTO_START is set. Returns the agent base URL.
    """
    base_url = agent_url(ctx)
    if is_agent_running(base_url):
        return base_url
    if os.environ.get("ARK_NO_AUTO_START"):
        exit_with_error("agent not available: agent is not running (auto-start disabled)")

    try:
        launcher.start()
    except LaunchError as e:
        exit_with_error(f"agent not available: auto-start agent: {e}")
    if not wait_for(lambda: is_agent_running(base_url), AUTO_START_TIMEOUT, progress=False):
        exit_with_error("agent not available: agent failed to start: timeout waiting for agent")
    return base_url


def _error_text(response: httpx.Response) -> str:
    try:
        return response.json().get("error") or f"status {response.status_code}"
    except ValueError:
        return f"status {response.status_code}"


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", help="Config file (default: ~/.ark/config.yml)"
    ),
):
    ctx.obj = {"config_path": config}


@app.command()
def version():
    """Display version information."""
    typer.echo(f"Ark version {__version__}")
    typer.echo(f"Commit:     {__commit__}")
    typer.echo(f"Built:      {__build_date__}")


# --- agent ---


@agent_app.command("start")
def agent_start(ctx: typer.Context):
    """Start the Ark agent."""
    base_url = agent_url(ctx)
    if is_agent_running(base_url):
        typer.echo("✓ Agent is already running")
        return

    typer.echo("Starting Ark agent...")
    try:
        launcher.start()
    except LaunchError as e:
        exit_with_error(f"start agent: {e}")

    typer.echo("Waiting for agent to start", nl=False)
    if not wait_for(lambda: is_agent_running(base_url), AGENT_START_TIMEOUT):
        typer.echo(" ✗")
        exit_with_error("agent failed to start: timeout waiting for agent")
    typer.echo(" ✓")
    typer.echo("Agent started successfully")
    typer.echo(f"Logs: {local_paths().log_path}")


@agent_app.command("stop")
def agent_stop(ctx: typer.Context):
    """Stop the Ark agent."""
    base_url = agent_url(ctx)
    if not is_agent_running(base_url):
        typer.echo("Agent is not running")
        return

    pid = locked_pid(local_paths().lock_path)
    if pid is None:
        typer.echo("Agent is running but lock file not found")
        typer.echo("Try manually stopping the agent process")
        raise typer.Exit(1)

    typer.echo(f"Stopping agent (PID {pid})...")
    try:
        process = psutil.Process(pid)
        if os.name == "nt":
            process.terminate()
        else:
            process.send_signal(signal.SIGINT)
    except psutil.Error as e:
        exit_with_error(f"send signal: {e}")

    typer.echo("Waiting for agent to stop", nl=False)
    if not wait_for(lambda: not is_agent_running(base_url), STOP_TIMEOUT):
        typer.echo(" ✗")
        typer.echo("Agent did not stop gracefully, may need to be killed manually")
        raise typer.Exit(1)
    typer.echo(" ✓")
    typer.echo("Agent stopped successfully")


@agent_app.command("status")
def agent_status(ctx: typer.Context):
    """Check agent status."""
    base_url = agent_url(ctx)
    if not is_agent_running(base_url):
        typer.echo("✗ Agent is not running")
        typer.echo("")
        typer.echo("Start the agent with: ark agent start")
        raise typer.Exit(1)

    typer.echo("✓ Agent is running")
    agent_version = get_agent_version(base_url)
    if agent_version:
        typer.echo(f"  Version: {agent_version}")


# --- credentials ---


@credentials_app.command("set")
def credentials_set(
    ctx: typer.Context,
    profile: str = typer.Argument(..., help="Profile name"),
    access_key_id: Optional[str] = typer.Option(None, help="AWS access key ID"),
    secret_access_key: Optional[str] = typer.Option(None, help="AWS secret access key"),
    session_token: Optional[str] = typer.Option(
        None, help="AWS session token (for temporary credentials)"
    ),
    region: str = typer.Option("us-east-1", help="Default AWS region"),
):
    """Store AWS credentials for a profile."""
    base_url = ensure_agent_running(ctx)

    if not access_key_id:
        access_key_id = typer.prompt("AWS Access Key ID")
    if not secret_access_key:
        secret_access_key = typer.prompt("AWS Secret Access Key", hide_input=True)
    if not access_key_id or not secret_access_key:
        exit_with_error("access-key-id and secret-access-key are required")

    payload = {
        "profile": profile,
        "access_key_id": access_key_id,
        "secret_access_key": secret_access_key,
        "session_token": session_token,
        "region": region,
    }
    try:
        with agent_client(base_url) as client:
            response = client.post("/api/credentials", json=payload)
    except httpx.HTTPError as e:
        exit_with_error(f"send to agent: {e}")
    if response.status_code != 200:
        exit_with_error(f"agent error: {_error_text(response)}")

    typer.echo(f"✓ Credentials stored for profile '{profile}'")
    typer.echo("")
    typer.echo("Note: Credentials are stored locally and not encrypted.")


@credentials_app.command("list")
def credentials_list(ctx: typer.Context):
    """List stored credential profiles."""
    base_url = ensure_agent_running(ctx)
    try:
        with agent_client(base_url) as client:
            response = client.get("/api/credentials")
    except httpx.HTTPError as e:
        exit_with_error(f"query agent: {e}")
    if response.status_code != 200:
        exit_with_error(f"agent returned status {response.status_code}")

    profiles = response.json()
    if not profiles:
        typer.echo("No credentials stored.")
        typer.echo("")
        typer.echo("Add credentials with: ark credentials set <profile>")
        return

    typer.echo("Stored credential profiles:")
    typer.echo("")
    for p in profiles:
        typer.echo(f"  {p['profile']}  (region: {p['region']})")


@credentials_app.command("delete")
def credentials_delete(ctx: typer.Context, profile: str = typer.Argument(..., help="Profile name")):
    """Delete stored credentials."""
    base_url = ensure_agent_running(ctx)
    try:
        with agent_client(base_url) as client:
            response = client.delete(f"/api/credentials/{profile}")
    except httpx.HTTPError as e:
        exit_with_error(f"send to agent: {e}")
    if response.status_code == 404:
        typer.echo(f"Profile '{profile}' not found")
        raise typer.Exit(1)
    if response.status_code != 200:
        exit_with_error(f"agent returned status {response.status_code}")
    typer.echo(f"✓ Deleted credentials for profile '{profile}'")


@credentials_app.command("validate")
def credentials_validate(
    ctx: typer.Context, profile: str = typer.Argument("default", help="Profile name")
):
    """Check stored credentials against AWS STS."""
    base_url = ensure_agent_running(ctx)
    try:
        with agent_client(base_url, timeout=30.0) as client:
            response = client.post(f"/api/credentials/{profile}/validate")
    except httpx.HTTPError as e:
        exit_with_error(f"send to agent: {e}")
    if response.status_code == 404:
        typer.echo(f"Profile '{profile}' not found")
        raise typer.Exit(1)
    if response.status_code != 200:
        exit_with_error(f"credentials rejected: {_error_text(response)}")

    identity = response.json()
    typer.echo(f"✓ Credentials for profile '{profile}' are valid")
    typer.echo(f"  Account: {identity['account']}")
    typer.echo(f"  ARN:     {identity['arn']}")


# --- config ---


@config_app.command("get")
def config_get(ctx: typer.Context, key: str = typer.Argument(..., help="Dotted key, e.g. agent.port")):
    """Get a configuration value."""
    config = load_config(ctx)
    try:
        typer.echo(config.get_value(key))
    except ConfigError as e:
        exit_with_error(str(e))


@config_app.command("set")
def config_set(ctx: typer.Context, key: str, value: str):
    """Set a configuration value."""
    config = load_config(ctx)
    try:
        config.set_value(key, value)
        config.save()
    except ConfigError as e:
        exit_with_error(str(e))
    typer.echo(f"✓ Set {key} = {value}")


@config_app.command("list")
def config_list(ctx: typer.Context):
    """List all configuration."""
    config = load_config(ctx)
    typer.echo(f"Configuration file: {config.config_path}\n")
    typer.echo(config.dump(), nl=False)


@config_app.command("init")
def config_init(ctx: typer.Context):
    """Initialize configuration with defaults."""
    config = Config.defaults((ctx.obj or {}).get("config_path"))
    try:
        config.save()
    except ConfigError as e:
        exit_with_error(f"save config: {e}")
    typer.echo(f"✓ Configuration initialized at {config.config_path}")


# --- s3 ---


def _print_training_required(modules: list):
    typer.echo("✗ Training required before creating S3 buckets")
    typer.echo("")
    typer.echo("You must complete the following training modules:")
    typer.echo("")
    for i, module in enumerate(modules, start=1):
        title = module.get("title") or module.get("name")
        typer.echo(f"  {i}. {title} ({module.get('estimated_minutes', 0)} minutes)")
        typer.echo(f"     Start training: ark training start {module.get('name')}")
        typer.echo("")
    typer.echo("After completing training, run your command again.")


@s3_app.command("create-bucket")
def s3_create_bucket(
    ctx: typer.Context,
    bucket_name: str = typer.Argument(..., help="Globally unique bucket name"),
    region: str = typer.Option("us-east-1", help="AWS region for bucket"),
    encryption: str = typer.Option("AES256", help="Encryption type: AES256 or aws:kms"),
    kms_key_id: Optional[str] = typer.Option(
        None, help="KMS key ID (required if encryption is aws:kms)"
    ),
    versioning: bool = typer.Option(False, "--versioning", help="Enable bucket versioning"),
    profile: str = typer.Option("default", help="AWS credential profile to use"),
):
    """
    Create an S3 bucket.

    Some operations require completed training. If blocked, complete the
    listed training modules and try again.
    """
    problems = bucket_name_problems(bucket_name)
    if problems:
        exit_with_error(f"invalid bucket name '{bucket_name}': " + "; ".join(problems))
    if encryption not in ENCRYPTION_TYPES:
        exit_with_error(f"encryption must be 'AES256' or 'aws:kms', got: {encryption}")
    if encryption == "aws:kms" and not kms_key_id:
        exit_with_error("--kms-key-id is required when using aws:kms encryption")

    base_url = ensure_agent_running(ctx)
    payload = {
        "bucket_name": bucket_name,
        "region": region,
        "encryption": {"type": encryption, "kms_key_id": kms_key_id},
        "versioning_enabled": versioning,
        "profile": profile,
    }
    try:
        with agent_client(base_url, timeout=60.0) as client:
            response = client.post("/api/s3/buckets", json=payload)
        result = response.json()
    except httpx.HTTPError as e:
        exit_with_error(f"failed to create bucket: {e}")
    except ValueError as e:
        exit_with_error(f"failed to parse response: {e}")

    if response.status_code in (200, 201):
        typer.echo("✓ S3 bucket created successfully")
        typer.echo("")
        typer.echo(f"  Name:      {result['bucket_name']}")
        typer.echo(f"  Region:    {result['region']}")
        if result.get("location"):
            typer.echo(f"  Location:  {result['location']}")
        if result.get("created_at"):
            created = datetime.fromisoformat(result["created_at"].replace("Z", "+00:00"))
            typer.echo(f"  Created:   {created.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        return

    if response.status_code == 403 and result.get("status") == "blocked":
        _print_training_required(result.get("required_modules") or [])
        raise typer.Exit(1)

    exit_with_error(f"failed to create bucket: {_error_text(response)}")


def main():
    """Entry point for the ark command."""
    setup_logging({"logging": {"level": "WARNING"}})
    app()


if __name__ == "__main__":
    main()
