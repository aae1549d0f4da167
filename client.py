from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import get_settings
from errors import ParseFailed, RequestFailed, SessionExpired, Unauthenticated
from schemas import (
    Credentials,
    LoginResponse,
    PasswordChangeIn,
    ProfileUpdateIn,
    RefreshResponse,
    UserProfile,
)
from session_store import SessionStore, get_default_store

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/login/"
REGISTER_PATH = "/api/register/"
REFRESH_PATH = "/api/token/refresh/"
PROFILE_PATH = "/api/user/"
PASSWORD_PATH = "/api/user/change-password/"

MAX_AUTH_RETRIES = 1


@dataclass(frozen=True)
class TransportResponse:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)


Transport = Callable[[str, str, Mapping[str, str], Optional[bytes], float], TransportResponse]


def urllib_transport(
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: Optional[bytes],
    timeout: float,
) -> TransportResponse:
    req = Request(url, data=body, headers=dict(headers), method=method)
    try:
        with urlopen(req, timeout=timeout) as resp:
            return TransportResponse(resp.status, resp.read(), dict(resp.headers))
    except HTTPError as exc:
        # error statuses are still responses; the client classifies them
        payload = exc.read() if exc.fp is not None else b""
        return TransportResponse(exc.code, payload, dict(exc.headers or {}))
    except (URLError, TimeoutError, OSError) as exc:
        raise RequestFailed(f"Could not reach the finance API: {exc}") from exc


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("detail", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


def _decode_json(raw: bytes) -> Any:
    return json.loads(raw.decode("utf-8"))


class ApiClient:
    """Authenticated access to the remote finance API.

    Attaches the bearer token from the session store, renews it once through
    the refresh token when the API answers 401, and classifies every failure
    into the exceptions in ``errors``.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        *,
        base_url: Optional[str] = None,
        transport: Optional[Transport] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.store = store if store is not None else get_default_store()
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.transport = transport or urllib_transport
        self.timeout = timeout if timeout is not None else settings.http_timeout_secs
        self._refresh_lock = threading.Lock()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _send(
        self,
        method: str,
        endpoint: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
        request_id: str,
    ) -> TransportResponse:
        logger.info(f"api_request: id={request_id} method={method} endpoint={endpoint}")
        response = self.transport(method, self._url(endpoint), headers, body, self.timeout)
        logger.info(
            f"api_response: id={request_id} method={method} endpoint={endpoint} "
            f"status={response.status}"
        )
        return response

    def _post_public(self, endpoint: str, payload: Mapping[str, Any]) -> tuple[int, Any]:
        """Unauthenticated JSON POST; returns status and decoded body (None if unreadable)."""
        request_id = uuid.uuid4().hex[:8]
        response = self._send(
            "POST",
            endpoint,
            {"Content-Type": "application/json", "Accept": "application/json"},
            json.dumps(payload).encode("utf-8"),
            request_id,
        )
        try:
            data = _decode_json(response.body) if response.body else None
        except ValueError:
            data = None
        return response.status, data

    def refresh(self) -> Optional[str]:
        """Exchange the refresh token for a new access token; None on any failure."""
        refresh_token = self.store.get_refresh_token()
        if not refresh_token:
            logger.info("token_refresh: skipped reason=no_refresh_token")
            return None
        try:
            status, data = self._post_public(REFRESH_PATH, {"refresh": refresh_token})
        except RequestFailed as exc:
            logger.warning(f"token_refresh: failed reason=transport error={exc}")
            return None
        if not 200 <= status < 300:
            logger.warning(f"token_refresh: failed status={status}")
            return None
        try:
            parsed = RefreshResponse.model_validate(data)
        except ValidationError:
            logger.warning("token_refresh: failed reason=malformed_response")
            return None
        if not parsed.access:
            logger.warning("token_refresh: failed reason=missing_access_token")
            return None
        self.store.set_access_token(parsed.access)
        logger.info("token_refresh: ok")
        return parsed.access

    def _refresh_after(self, stale_token: Optional[str]) -> Optional[str]:
        # One refresh in flight at a time; callers that queued behind it reuse
        # the token it produced instead of spending the refresh token again.
        with self._refresh_lock:
            current = self.store.get_access_token()
            if current and current != stale_token:
                return current
            return self.refresh()

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        request_id = uuid.uuid4().hex[:8]
        method = method.upper()

        token = self.store.get_access_token()
        if not token:
            logger.info(f"api_request: id={request_id} no_access_token, refreshing")
            token = self._refresh_after(None)
            if not token:
                raise Unauthenticated()

        payload = json.dumps(body).encode("utf-8") if body is not None else None

        attempt = 0
        while True:
            merged = dict(headers or {})
            merged["Authorization"] = f"Bearer {token}"
            merged["Content-Type"] = "application/json"
            response = self._send(method, endpoint, merged, payload, request_id)

            if response.status != 401:
                break
            if attempt >= MAX_AUTH_RETRIES:
                logger.warning(
                    f"api_request: id={request_id} still_unauthorized_after_refresh"
                )
                self.store.clear()
                raise SessionExpired()
            attempt += 1
            token = self._refresh_after(token)
            if not token:
                logger.warning(f"api_request: id={request_id} refresh_failed")
                self.store.clear()
                raise SessionExpired()

        return self._parse(response, request_id)

    def _parse(self, response: TransportResponse, request_id: str) -> Any:
        ok = 200 <= response.status < 300
        if response.status == 204 or (ok and not response.body):
            return None
        try:
            data = _decode_json(response.body)
        except ValueError as exc:
            if not ok:
                raise RequestFailed(
                    f"Request failed with status {response.status}",
                    status=response.status,
                ) from exc
            logger.warning(f"api_response: id={request_id} unreadable_body")
            raise ParseFailed(status=response.status) from exc
        if not ok:
            raise RequestFailed(
                _error_message(data, f"Request failed with status {response.status}"),
                status=response.status,
            )
        return data

    def register(self, username: str, password: str) -> Any:
        credentials = Credentials(username=username, password=password)
        logger.info(f"register: username={credentials.username}")
        status, data = self._post_public(REGISTER_PATH, credentials.model_dump())
        if not 200 <= status < 300:
            raise RequestFailed(_error_message(data, "Registration failed"), status=status)
        return data

    def login(self, username: str, password: str) -> UserProfile:
        credentials = Credentials(username=username, password=password)
        logger.info(f"login: username={credentials.username}")
        status, data = self._post_public(LOGIN_PATH, credentials.model_dump())
        if not 200 <= status < 300:
            raise RequestFailed(_error_message(data, "Login failed"), status=status)
        try:
            parsed = LoginResponse.model_validate(data)
        except ValidationError as exc:
            raise ParseFailed(status=status) from exc
        if not parsed.access:
            raise ParseFailed("Login response did not include an access token", status=status)
        user = parsed.user or UserProfile(username=credentials.username)
        self.store.set_session(
            parsed.access, parsed.refresh, user.model_dump(exclude_none=True)
        )
        logger.info(f"login: ok username={user.username}")
        return user

    def logout(self) -> None:
        self.store.clear()
        logger.info("logout: session cleared")

    def current_user(self) -> Optional[UserProfile]:
        stored = self.store.get_user()
        if stored is None:
            return None
        try:
            return UserProfile.model_validate(stored)
        except ValidationError:
            return None

    def update_profile(self, data: ProfileUpdateIn) -> UserProfile:
        result = self.request(PROFILE_PATH, method="PUT", body=data.to_payload())
        merged = dict(self.store.get_user() or {})
        if isinstance(result, dict):
            merged.update({k: v for k, v in result.items() if v is not None})
        else:
            merged.update(data.to_payload())
        try:
            profile = UserProfile.model_validate(merged)
        except ValidationError as exc:
            raise ParseFailed() from exc
        self.store.set_user(profile.model_dump(exclude_none=True))
        return profile

    def change_password(self, data: PasswordChangeIn) -> None:
        self.request(
            PASSWORD_PATH,
            method="POST",
            body={
                "old_password": data.current_password,
                "new_password": data.new_password,
            },
        )
