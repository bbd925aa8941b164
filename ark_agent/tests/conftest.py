"""
Configuration and fixtures for ark_agent tests.
"""

import json
import os
import tempfile

import httpx
import pytest
import yaml

from ark_agent.config import AgentSettings
from ark_agent.schemas import Module
from ark_agent.storage import Storage
from ark_agent.training import GatePolicy, evaluate_training_gate


class FakeProbe:
    """Process probe with a fixed set of live PIDs."""

    def __init__(self, alive=()):
        self.alive = set(alive)

    def exists(self, pid):
        return pid in self.alive


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeBackend:
    """
    In-memory backend answering the policy check and audit log contracts.
    Policy decisions follow the training gate rule.
    """

    def __init__(self):
        self.policies = []
        self.modules = {}
        self.completed = set()
        self.checks = []
        self.audit_entries = []
        self.audit_status = 200

    def require(self, action, *modules):
        for module in modules:
            self.modules[module.name] = module
        self.policies.append(
            GatePolicy("training_gate", [action], [m.name for m in modules])
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == "/api/policies/check":
            self.checks.append(body)
            decision = evaluate_training_gate(
                body["action"], self.policies, self.modules, self.completed
            )
            return httpx.Response(200, json=decision.model_dump())
        if request.url.path == "/api/audit/log":
            self.audit_entries.append(body)
            return httpx.Response(self.audit_status, json={"status": "ok"})
        return httpx.Response(404, json={"error": "not found"})

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


def unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


@pytest.fixture
def data_dir():
    """Temporary agent data directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "ark")


@pytest.fixture
def write_config():
    """
    Writes a YAML user config into a temporary directory and returns its path.
    """
    with tempfile.TemporaryDirectory() as temp_dir:

        def _write(data):
            path = os.path.join(temp_dir, "config.yml")
            with open(path, "w") as f:
                yaml.dump(data, f)
            return path

        yield _write


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(data_dir, clock):
    store = Storage(os.path.join(data_dir, "agent.db"), clock=clock)
    yield store
    store.close()


@pytest.fixture
def settings(data_dir):
    return AgentSettings(
        data_dir=data_dir,
        backend_url="http://backend.test",
        user_id="alice",
        version="1.2.3",
        commit="abc123",
        build_date="2024-01-01",
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def s3_basics():
    return Module(
        id="1", name="s3_basics", title="S3 Basics", estimated_minutes=15
    )


@pytest.fixture
def unreachable_transport():
    """Transport whose every request fails to connect."""
    return httpx.MockTransport(unreachable)


@pytest.fixture
def make_probe():
    return FakeProbe
