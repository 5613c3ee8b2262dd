# =============================================================================
# File: sms_bridge/infra/matrix/client.py
# Description: Matrix client-server API client acting as the application
#              service bot (one shared httpx.AsyncClient)
# =============================================================================

from __future__ import annotations

import logging
import uuid
from typing import Optional, Any, Dict, List
from urllib.parse import quote

import httpx

from sms_bridge.infra.matrix.exceptions import (
    MatrixError,
    MatrixBadRequestError,
    MatrixAuthenticationError,
    MatrixForbiddenError,
    MatrixNotFoundError,
    MatrixRateLimitError,
    MatrixServerError,
    MatrixNetworkError,
    MatrixTimeoutError,
)

log = logging.getLogger("sms_bridge.infra.matrix.client")

CLIENT_API = "/_matrix/client/v3"


def _quote(value: str) -> str:
    """Percent-encode a path segment (aliases and room ids contain # ! :)."""
    return quote(value, safe="")


class MatrixClient:
    """
    Client-server API calls needed by the relay.

    Requests carry the application service token and are made as the bridge
    bot via the `user_id` query parameter. No internal retry: callers retry
    at relay-unit granularity.
    """

    def __init__(
            self,
            homeserver_url: str,
            as_token: str,
            bot_user_id: str,
            timeout_seconds: float = 30.0,
            http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.homeserver_url = homeserver_url.rstrip("/")
        self.bot_user_id = bot_user_id
        self._as_token = as_token
        self._timeout = timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.homeserver_url,
                timeout=self._timeout,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    # =========================================================================
    # Relay operations
    # =========================================================================

    async def resolve_room_by_alias(self, alias: str) -> Optional[str]:
        try:
            data = await self._request("GET", f"{CLIENT_API}/directory/room/{_quote(alias)}")
        except MatrixNotFoundError:
            log.debug(f"Alias {alias} not found on homeserver")
            return None
        return data.get("room_id")

    async def create_room(self, alias_localpart: str, name: str) -> str:
        data = await self._request(
            "POST",
            f"{CLIENT_API}/createRoom",
            json={
                "room_alias_name": alias_localpart,
                "name": name,
                "preset": "private_chat",
                "visibility": "private",
            },
        )
        room_id = data.get("room_id")
        if not room_id:
            raise MatrixError("createRoom response without room_id")
        log.info(f"Created room {room_id} for alias localpart {alias_localpart}")
        return room_id

    async def get_room_state(self, room_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{CLIENT_API}/rooms/{_quote(room_id)}/state")
        if not isinstance(data, list):
            raise MatrixError(f"Unexpected state response for {room_id}")
        return data

    async def invite(self, room_id: str, user_id: str) -> None:
        await self._request(
            "POST",
            f"{CLIENT_API}/rooms/{_quote(room_id)}/invite",
            json={"user_id": user_id},
        )
        log.info(f"Invited {user_id} to {room_id}")

    async def send_message(self, room_id: str, content: Dict[str, Any], txn_id: Optional[str] = None) -> str:
        """
        Send an m.room.message event.

        The homeserver answers a repeated txn_id with the event id of the
        first send instead of posting again.
        """
        txn_id = txn_id or uuid.uuid4().hex
        data = await self._request(
            "PUT",
            f"{CLIENT_API}/rooms/{_quote(room_id)}/send/m.room.message/{_quote(txn_id)}",
            json=content,
        )
        return data.get("event_id", "")

    async def whoami(self) -> str:
        """Startup check: confirms the token is accepted by the homeserver."""
        data = await self._request("GET", f"{CLIENT_API}/account/whoami")
        return data.get("user_id", "")

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(
            self,
            method: str,
            path: str,
            *,
            json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        client = await self._get_client()

        log.debug(f"Matrix API call: {method} {path}")

        try:
            response = await client.request(
                method,
                path,
                json=json,
                params={"user_id": self.bot_user_id},
                headers={"Authorization": f"Bearer {self._as_token}"},
            )
        except httpx.TimeoutException as e:
            raise MatrixTimeoutError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise MatrixNetworkError(f"Network error calling {path}: {e}") from e

        if response.status_code >= 400:
            self._handle_http_error(response, path)

        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _handle_http_error(response: httpx.Response, path: str) -> None:
        """Raise the MatrixError subclass matching the status code."""
        status_code = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        errcode = body.get("errcode")
        error = body.get("error") or response.text[:200]
        message = f"HTTP {status_code} at {path}: {errcode or ''} {error}".strip()
        kwargs = {"status_code": status_code, "errcode": errcode, "error": error}

        log.debug(f"Matrix API HTTP error {status_code} at {path}: {errcode} {error}")

        if status_code == 400:
            raise MatrixBadRequestError(message, **kwargs)
        elif status_code == 401:
            raise MatrixAuthenticationError(message, **kwargs)
        elif status_code == 403:
            raise MatrixForbiddenError(message, **kwargs)
        elif status_code == 404:
            raise MatrixNotFoundError(message, **kwargs)
        elif status_code == 429:
            raise MatrixRateLimitError(message, retry_after_ms=body.get("retry_after_ms"), **kwargs)
        elif status_code >= 500:
            raise MatrixServerError(message, **kwargs)
        else:
            raise MatrixError(message, **kwargs)
