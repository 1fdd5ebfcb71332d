"""HTTP client for the game server's account lookup and role sync endpoints.

Both endpoints authenticate with the shared server secret in the
``Authorization`` header. Nothing here retries: a failed call is classified
and raised, and the caller decides what to do.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx
from pydantic import ValidationError

from rolelink import __version__
from rolelink.errors import AccountNotFound, MalformedResponse, RemoteRejected, TransportFailure
from rolelink.models import ExternalAccount, SyncBatch, SyncRequest

logger = logging.getLogger(__name__)

LOOKUP_PATH = "/gsp/lookup"
SYNC_ROLES_PATH = "/gsp/sync_roles"
USER_AGENT = f"rolelink/{__version__}"

_MAX_ERROR_MESSAGE_CHARS = 200


def _safe_error_message(response: httpx.Response) -> str:
    try:
        text = response.text.strip()
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return "<no message>"
    if not text:
        return "<no message>"
    return " ".join(text.split())[:_MAX_ERROR_MESSAGE_CHARS]


class AuthorizationGateway:
    """Talks to the game server on behalf of the linking and sync flows."""

    def __init__(
        self,
        *,
        base_url: str,
        server_password: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._server_password = server_password
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": self._server_password,
            "User-Agent": USER_AGENT,
        }

    async def lookup_account(self, handle: str) -> ExternalAccount:
        """Resolve an account handle to ``{account_id, name}``.

        Raises ``AccountNotFound`` on 404, ``RemoteRejected`` on any other
        non-success status, ``MalformedResponse`` when the body does not parse
        and ``TransportFailure`` when the server cannot be reached.
        """
        try:
            response = await self._http_client.get(
                f"{self._base_url}{LOOKUP_PATH}",
                params={"username": handle},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Account lookup request failed: {exc}") from exc

        if response.status_code == 404:
            raise AccountNotFound(handle)

        if not response.is_success:
            raise RemoteRejected(response.status_code, _safe_error_message(response))

        body = response.text
        try:
            return ExternalAccount.model_validate_json(body)
        except ValidationError as exc:
            raise MalformedResponse(body) from exc

    async def push(self, requests: Sequence[SyncRequest]) -> None:
        """Submit a batch of keep/remove decisions in one call.

        The server either applies the whole batch or rejects it.
        """
        batch = SyncBatch(users=list(requests))
        try:
            response = await self._http_client.post(
                f"{self._base_url}{SYNC_ROLES_PATH}",
                content=batch.to_json(),
                headers={**self._headers(), "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Role sync request failed: {exc}") from exc

        if not response.is_success:
            message = _safe_error_message(response)
            logger.warning(
                "Role update failed: code %d, message: %s",
                response.status_code,
                message,
            )
            raise RemoteRejected(response.status_code, message)

        logger.debug("Pushed role sync for %d account(s)", len(batch.users))

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
