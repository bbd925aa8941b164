"""
Tests for the fail-open policy gate client.
"""

import json

import httpx
import pytest

from ark_agent.errors import RemoteUnavailableError
from ark_agent.gate import PolicyGateClient
from ark_agent.schemas import PolicyCheckRequest


def _client(handler):
    return PolicyGateClient(
        "http://backend.test", timeout=5.0, transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_check_posts_request_body():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"action": "allow", "message": "ok"})

    allowed, modules = await _client(handler).check(
        "alice", "s3:CreateBucket", "s3:bucket", {"bucket_name": "data", "region": "us-east-1"}
    )

    assert allowed is True
    assert modules == []
    assert seen["url"] == "http://backend.test/api/policies/check"
    assert seen["body"] == {
        "user_id": "alice",
        "action": "s3:CreateBucket",
        "resource_type": "s3:bucket",
        "resource_details": {"bucket_name": "data", "region": "us-east-1"},
    }


@pytest.mark.asyncio
async def test_block_returns_modules():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "action": "block",
                "reason": "training_required",
                "required_modules": [
                    {"id": 7, "name": "s3_basics", "title": "S3 Basics", "estimated_minutes": 15}
                ],
                "message": "Complete required training modules to perform this operation",
            },
        )

    allowed, modules = await _client(handler).check("alice", "s3:CreateBucket", "s3:bucket", {})

    assert allowed is False
    assert [m.name for m in modules] == ["s3_basics"]
    assert modules[0].id == "7"
    assert modules[0].estimated_minutes == 15


@pytest.mark.asyncio
async def test_connection_error_fails_open(unreachable_transport):
    client = PolicyGateClient("http://backend.test", transport=unreachable_transport)
    allowed, modules = await client.check("alice", "s3:CreateBucket", "s3:bucket", {})
    assert allowed is True
    assert modules == []


@pytest.mark.asyncio
async def test_timeout_fails_open():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    allowed, modules = await _client(handler).check("alice", "s3:CreateBucket", "s3:bucket", {})
    assert (allowed, modules) == (True, [])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "internal"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"reason": "missing action"}),
        httpx.Response(200, json={"action": "maybe"}),
    ],
)
async def test_bad_responses_fail_open(response):
    allowed, modules = await _client(lambda request: response).check(
        "alice", "s3:CreateBucket", "s3:bucket", {}
    )
    assert (allowed, modules) == (True, [])


@pytest.mark.asyncio
async def test_null_modules_on_allow():
    def handler(request):
        return httpx.Response(200, json={"action": "allow", "required_modules": None})

    allowed, modules = await _client(handler).check("alice", "s3:CreateBucket", "s3:bucket", {})
    assert (allowed, modules) == (True, [])


@pytest.mark.asyncio
async def test_fetch_decision_raises_remote_unavailable(unreachable_transport):
    client = PolicyGateClient("http://backend.test/", transport=unreachable_transport)
    request = PolicyCheckRequest(user_id="u", action="a", resource_type="r")
    with pytest.raises(RemoteUnavailableError):
        await client.fetch_decision(request)


@pytest.mark.asyncio
async def test_no_retry():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    await _client(handler).check("alice", "s3:CreateBucket", "s3:bucket", {})
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_block_body_with_error_status_fails_open():
    def handler(request):
        return httpx.Response(
            503,
            json={
                "action": "block",
                "reason": "training_required",
                "required_modules": [{"name": "s3_basics"}],
            },
        )

    allowed, modules = await _client(handler).check("alice", "s3:CreateBucket", "s3:bucket", {})
    assert (allowed, modules) == (True, [])
