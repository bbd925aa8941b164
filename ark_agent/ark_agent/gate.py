"""
Client for the backend's training-gate policy check.

The gate fails open: if the policy service cannot be reached or answers
with something that is not a policy decision, the action is allowed.
"""

from typing import Any, Optional

import httpx
from pydantic import ValidationError as SchemaError

from ark_agent.errors import RemoteUnavailableError
from ark_agent.logging import get_logger
from ark_agent.schemas import Module, PolicyCheckRequest, PolicyDecision

logger = get_logger("PolicyGate")

POLICY_CHECK_PATH = "/api/policies/check"


class PolicyGateClient:
    """
    Asks the backend whether a user may perform an action.

    Only an explicit "block" from a reachable, well-formed service blocks.
    Requests are made once with a fixed timeout and never retried.
    """

    def __init__(
        self,
        backend_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            backend_url (str): Base URL of the backend, e.g. http://localhost:8080
            timeout (float): Per-request timeout in seconds
            transport (httpx.AsyncBaseTransport, optional): Transport override for tests
        """
        self.url = backend_url.rstrip("/") + POLICY_CHECK_PATH
        self.timeout = timeout
        self._transport = transport

    async def fetch_decision(self, request: PolicyCheckRequest) -> PolicyDecision:
        """
        Perform the remote check.

        Raises:
            RemoteUnavailableError: On connection failure, timeout, non-2xx
                status or an undecodable body
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=request.model_dump())
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(f"policy service unreachable: {e!r}") from e

        if not response.is_success:
            raise RemoteUnavailableError(
                f"policy service returned status {response.status_code}"
            )

        try:
            return PolicyDecision.model_validate_json(response.content)
        except SchemaError as e:
            raise RemoteUnavailableError(f"undecodable policy response: {e}") from e

    async def check(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        resource_details: dict[str, Any],
    ) -> tuple[bool, list[Module]]:
        """
        Check whether user_id may perform action on the described resource.

        Returns:
            tuple: (allowed, required_modules). required_modules is empty
                unless the backend explicitly blocked the action.
        """
        request = PolicyCheckRequest(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_details=resource_details,
        )
        try:
            decision = await self.fetch_decision(request)
        except RemoteUnavailableError as e:
            logger.warning(
                "backend unavailable for policy check, allowing operation",
                action=action,
                error=str(e),
            )
            return True, []

        if decision.action == "block":
            logger.info(
                "policy check blocked action",
                user_id=user_id,
                action=action,
                reason=decision.reason,
                modules=[m.name for m in decision.required_modules],
            )
            return False, decision.required_modules

        logger.debug("policy check allowed action", user_id=user_id, action=action)
        return True, []
