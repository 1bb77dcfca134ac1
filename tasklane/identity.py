"""Client for the hosted identity provider (Supabase Auth REST API).

The service never verifies tokens itself: every bearer token is sent to
``GET /auth/v1/user`` and the provider's answer decides who the caller is.
Sign-up, login, logout, profile updates and refreshes are forwarded as-is.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from tasklane.errors import Unauthorized, UpstreamFailure, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller as reported by the identity provider."""
    id: str
    email: Optional[str] = None
    token: str = field(default="", repr=False)
    user: dict[str, Any] = field(default_factory=dict, repr=False)


def _error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of an Auth API error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        logger.error("Identity provider sent a non-JSON body (status %d)", response.status_code)
        raise UpstreamFailure("Identity provider returned an invalid response") from None


class IdentityClient:
    """Async wrapper over the Supabase Auth endpoints used by the API.

    Args:
        base_url: Project URL, e.g. ``https://xyz.supabase.co``.
        api_key: The project's anon key, sent as ``apikey`` on every call.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass a ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/auth/v1",
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            return await self._http.request(method, path, headers=headers, json=json, params=params)
        except httpx.TimeoutException as exc:
            logger.error("Identity provider timed out on %s %s", method, path)
            raise UpstreamFailure("Identity provider timed out", status_code=504) from exc
        except httpx.HTTPError as exc:
            logger.error("Identity provider unreachable on %s %s: %s", method, path, exc)
            raise UpstreamFailure("Identity provider unavailable") from exc

    async def get_user(self, token: str) -> Principal:
        """Resolve a bearer token to a principal, or raise ``Unauthorized``."""
        response = await self._request("GET", "/user", token=token)
        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamFailure(f"Identity provider error: {_error_message(response)}")
        if response.status_code >= 400:
            raise Unauthorized("Invalid or expired token")
        user = _json_body(response)
        if not isinstance(user, dict) or not user.get("id"):
            raise Unauthorized("Invalid or expired token")
        return Principal(id=str(user["id"]), email=user.get("email"), token=token, user=user)

    async def sign_up(
        self, email: str, password: str, user_metadata: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": user_metadata or {}},
        )
        if response.status_code >= 400:
            raise ValidationError(_error_message(response), error="Registration Failed")
        return _split_session(_json_body(response))

    async def sign_in_with_password(self, email: str, password: str) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.status_code >= 400:
            raise Unauthorized(_error_message(response), error="Authentication Failed")
        return _split_session(_json_body(response))

    async def sign_out(self, token: str) -> None:
        response = await self._request("POST", "/logout", token=token)
        if response.status_code >= 400:
            raise ValidationError(_error_message(response), error="Logout Failed")

    async def update_user(self, token: str, user_metadata: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("PUT", "/user", token=token, json={"data": user_metadata})
        if response.status_code >= 400:
            raise ValidationError(_error_message(response), error="Update Failed")
        return _json_body(response)

    async def refresh_session(self, refresh_token: str) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if response.status_code >= 400:
            raise Unauthorized(_error_message(response), error="Token Refresh Failed")
        return _split_session(_json_body(response))["session"]


def _split_session(body: dict[str, Any]) -> dict[str, Any]:
    """Normalize an Auth API answer into ``{"user": ..., "session": ...}``.

    Token responses carry the user inside the session; sign-up without
    e-mail confirmation returns a bare user and no session.
    """
    if "access_token" in body:
        return {"user": body.get("user"), "session": body}
    return {"user": body, "session": None}
