"""Microsoft Graph online meetings client.

Creates and deletes Teams online meetings owned by a single organizer account
using the client-credentials flow. The access token is cached and refreshed
shortly before it expires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any, Sequence, cast
import uuid

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class MeetingProviderError(RuntimeError):
    """Raised when Microsoft Graph responds with an error or is unreachable."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


@dataclass(frozen=True)
class MeetingDetails:
    join_url: str
    meeting_id: str


def _graph_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class GraphMeetingsClient:
    """HTTP client for the Graph ``onlineMeetings`` API."""

    def __init__(
        self,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str | SecretStr,
        organizer_user_id: str,
        base_url: str = GRAPH_BASE_URL,
        login_base_url: str = LOGIN_BASE_URL,
        timeout: float = 10.0,
    ) -> None:
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = (
            client_secret.get_secret_value()
            if isinstance(client_secret, SecretStr)
            else client_secret
        )
        self._organizer = organizer_user_id
        self._base_url = base_url.rstrip("/")
        self._login_base_url = login_base_url.rstrip("/")
        self._timeout = timeout
        self._access_token: str | None = None
        self._token_refresh_at: float = 0.0

    def _fetch_access_token(self) -> tuple[str, int]:
        url = f"{self._login_base_url}/{self._tenant_id}/oauth2/v2.0/token"
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": GRAPH_SCOPE,
            "grant_type": "client_credentials",
        }
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(url, data=data)
        except httpx.TransportError as exc:
            logger.error("Microsoft identity platform unreachable: %s", exc)
            raise MeetingProviderError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Token request failed with %s: %s", response.status_code, response.text[:500]
            )
            raise MeetingProviderError(
                "Failed to obtain Microsoft Graph access token",
                status_code=response.status_code,
            )

        body = response.json()
        return body["access_token"], int(body.get("expires_in", 3600))

    def _get_access_token(self) -> str:
        """Return a cached access token, refreshing five minutes before expiry."""
        now = time.monotonic()
        if self._access_token is None or now >= self._token_refresh_at:
            token, expires_in = self._fetch_access_token()
            self._access_token = token
            self._token_refresh_at = now + max(expires_in - 300, 60)
        return self._access_token

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self._get_access_token()}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.request(method, url, headers=headers, json=json_body)
        except httpx.TransportError as exc:
            logger.error("Microsoft Graph unreachable for %s %s: %s", method, path, exc)
            raise MeetingProviderError(f"Microsoft Graph unreachable: {exc}") from exc

        if response.status_code >= 400:
            error_body: dict[str, Any] = {}
            try:
                parsed_body = response.json()
                if isinstance(parsed_body, dict):
                    error_body = parsed_body.get("error") or parsed_body
            except ValueError:
                error_body = {"raw": response.text[:500]}

            message = error_body.get("message") or response.text or "Microsoft Graph error"
            logger.error(
                "Microsoft Graph error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            if response.status_code == 401:
                self._access_token = None
            raise MeetingProviderError(
                message=message,
                status_code=response.status_code,
                details=error_body.get("code"),
            )

        if response.status_code == 204 or not response.content:
            return {}
        return cast(dict[str, Any], response.json())

    def create_meeting(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        attendees: Sequence[str] = (),
    ) -> MeetingDetails:
        body: dict[str, Any] = {
            "subject": subject,
            "startDateTime": _graph_datetime(start),
            "endDateTime": _graph_datetime(end),
            "lobbyBypassSettings": {"scope": "organization"},
        }
        if attendees:
            body["participants"] = {
                "attendees": [{"upn": email, "role": "attendee"} for email in attendees]
            }

        payload = self._request("POST", f"users/{self._organizer}/onlineMeetings", json_body=body)
        join_url = payload.get("joinWebUrl") or payload.get("joinUrl")
        meeting_id = payload.get("id")
        if not join_url or not meeting_id:
            raise MeetingProviderError("Microsoft Graph response missing join URL or meeting id")
        return MeetingDetails(join_url=join_url, meeting_id=meeting_id)

    def delete_meeting(self, meeting_id: str) -> None:
        try:
            self._request("DELETE", f"users/{self._organizer}/onlineMeetings/{meeting_id}")
        except MeetingProviderError as e:
            if e.status_code == 404:
                logger.info("Meeting %s already deleted", meeting_id)
                return
            raise


class FakeMeetingClient:
    """In-memory stub for testing/non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, list[Exception]] = {}
        self.meetings: dict[str, MeetingDetails] = {}

    def set_error(self, method: str, error: Exception, *, times: int = 1_000_000) -> None:
        """Fail the next ``times`` calls to ``method`` with ``error``."""
        self._errors[method] = [error] * times

    def clear_errors(self) -> None:
        self._errors.clear()

    def calls(self, method: str | None = None) -> list[dict[str, Any]]:
        if method is None:
            return list(self._calls)
        return [call for call in self._calls if call["method"] == method]

    def _raise_if_injected(self, method: str) -> None:
        pending = self._errors.get(method)
        if pending:
            raise pending.pop(0)

    def create_meeting(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        attendees: Sequence[str] = (),
    ) -> MeetingDetails:
        self._calls.append(
            {
                "method": "create_meeting",
                "subject": subject,
                "start": start,
                "end": end,
                "attendees": list(attendees),
            }
        )
        self._raise_if_injected("create_meeting")
        meeting_id = f"fake_meeting_{uuid.uuid4().hex[:12]}"
        details = MeetingDetails(
            join_url=f"https://teams.example.test/l/meetup-join/{meeting_id}",
            meeting_id=meeting_id,
        )
        self.meetings[meeting_id] = details
        return details

    def delete_meeting(self, meeting_id: str) -> None:
        self._calls.append({"method": "delete_meeting", "meeting_id": meeting_id})
        self._raise_if_injected("delete_meeting")
        self.meetings.pop(meeting_id, None)
