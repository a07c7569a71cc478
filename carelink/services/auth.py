"""
AuthCoordinator - access token ownership and single-flight refresh.

States:
- IDLE: No refresh in flight
- REFRESHING: One refresh task in flight; every caller awaits it

Refresh outcome:
- Success: tokens persisted and installed, new access token returned
- 401/403 from the refresh endpoint: credentials wiped, failure handler
  called once, `auth` ApiError raised
- Transient failure (no status / >= 500): retried with linear backoff
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from carelink.datastore.store import PersistentStore
from carelink.services.errors import ApiError, ErrorKind, normalize_error
from carelink.services.transport import HttpTransport, response_data

AUTH_TOKEN_KEY = "authToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_DATA_KEY = "@user_data"

REFRESH_PATH = "/auth/refresh"


class AuthState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class AuthToken:
    access_token: str
    refresh_token: str | None = None


AuthFailureHandler = Callable[[], Any]


class AuthCoordinator:
    """
    Holds the current token and coordinates refreshes.

    Usage:
        auth = AuthCoordinator(store, transport)
        auth.on_auth_failure(force_logout)
        await auth.load()

        headers = auth.auth_headers()
        new_token = await auth.refresh()
    """

    def __init__(
        self,
        store: PersistentStore,
        transport: HttpTransport,
        max_refresh_retries: int = 3,
        refresh_retry_delay: float = 1.0,
        refresh_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._store = store
        self._transport = transport
        self._max_refresh_retries = max_refresh_retries
        self._refresh_retry_delay = refresh_retry_delay
        self._refresh_timeout = refresh_timeout
        self._sleep = sleep

        self._token: AuthToken | None = None
        self._refresh_task: asyncio.Task[str | None] | None = None
        self._failure_handler: AuthFailureHandler | None = None

    @property
    def state(self) -> AuthState:
        if self._refresh_task is not None and not self._refresh_task.done():
            return AuthState.REFRESHING
        return AuthState.IDLE

    @property
    def token(self) -> AuthToken | None:
        return self._token

    @property
    def access_token(self) -> str | None:
        return self._token.access_token if self._token else None

    def auth_headers(self) -> dict[str, str]:
        if self._token is None:
            return {}
        return {"Authorization": f"Bearer {self._token.access_token}"}

    def on_auth_failure(self, handler: AuthFailureHandler | None) -> None:
        """Register the single failure subscriber (replaces any previous one)."""
        self._failure_handler = handler

    async def load(self) -> AuthToken | None:
        """Restore persisted credentials after a restart."""
        try:
            access = await self._store.get(AUTH_TOKEN_KEY)
            refresh = await self._store.get(REFRESH_TOKEN_KEY)
        except Exception as e:
            logger.error(f"Failed to restore credentials: {e}")
            return None
        if access:
            self._token = AuthToken(access_token=access, refresh_token=refresh)
            logger.info("Restored persisted access token")
        return self._token

    async def set_token(self, token: AuthToken | None) -> None:
        """Install (and persist) a token; None logs out."""
        if token is None:
            await self._clear_credentials()
            return

        self._token = token
        await self._store.set(AUTH_TOKEN_KEY, token.access_token)
        if token.refresh_token:
            await self._store.set(REFRESH_TOKEN_KEY, token.refresh_token)
        await self._mirror_user_data(token.access_token)

    async def refresh(self) -> str | None:
        """
        Refresh the access token, single-flight.

        Concurrent callers share one in-flight refresh. Raises an `auth`
        ApiError when the refresh cannot succeed.
        """
        if self._refresh_task is None or self._refresh_task.done():
            logger.info("Starting token refresh")
            self._refresh_task = asyncio.create_task(self._refresh_with_retries())
            # Outcome stays retrievable even if every waiter was cancelled
            self._refresh_task.add_done_callback(
                lambda t: t.cancelled() or t.exception()
            )
        else:
            logger.debug("Token refresh already in flight, joining it")

        return await asyncio.shield(self._refresh_task)

    async def _refresh_with_retries(self) -> str | None:
        attempt = 0
        while True:
            try:
                return await self._perform_refresh()
            except ApiError as error:
                if not self._is_transient(error):
                    raise

                if attempt >= self._max_refresh_retries:
                    logger.error(
                        f"Token refresh failed after {self._max_refresh_retries} retries"
                    )
                    raise ApiError(
                        "Could not refresh the session",
                        status=401,
                        code="TOKEN_REFRESH_FAILED",
                        kind=ErrorKind.AUTH,
                        cause=error,
                    ) from error

                attempt += 1
                delay = self._refresh_retry_delay * attempt
                logger.info(f"Token refresh retry {attempt} in {delay}s")
                await self._sleep(delay)

    async def _perform_refresh(self) -> str | None:
        try:
            refresh_token = await self._read_refresh_token()
        except Exception as e:
            raise self._storage_failure("read the refresh token", e) from e
        if not refresh_token:
            logger.warning("No refresh token stored, cannot refresh")
            raise ApiError(
                "No refresh token available",
                status=401,
                code="NO_REFRESH_TOKEN",
                kind=ErrorKind.AUTH,
            )

        try:
            response = await self._transport.send(
                "POST",
                REFRESH_PATH,
                json_data={"refreshToken": refresh_token},
                timeout=self._refresh_timeout,
            )
        except Exception as e:
            error = normalize_error(e)
            logger.error(f"Token refresh request failed: {error!r}")
            if error.status in (401, 403):
                await self._clear_credentials()
                await self._notify_failure()
                raise ApiError(
                    "Re-authentication required",
                    status=error.status,
                    code=error.code,
                    kind=ErrorKind.AUTH,
                    details=error.details,
                    cause=error,
                ) from e
            raise error from e

        body = response_data(response)
        if not isinstance(body, dict) or not body.get("token"):
            logger.error("Malformed token refresh response")
            raise ApiError(
                "Malformed token refresh response",
                status=500,
                code="MALFORMED_REFRESH_RESPONSE",
                retryable=False,
            )

        token = AuthToken(
            access_token=body["token"],
            refresh_token=body.get("refreshToken") or refresh_token,
        )
        try:
            await self.set_token(token)
        except Exception as e:
            raise self._storage_failure("store the refreshed token", e) from e
        logger.info("Token refreshed successfully")
        return token.access_token

    @staticmethod
    def _storage_failure(action: str, error: Exception) -> ApiError:
        logger.error(f"Token refresh could not {action}: {error}")
        return ApiError(
            "Could not refresh the session",
            status=401,
            code="TOKEN_REFRESH_FAILED",
            kind=ErrorKind.AUTH,
            cause=error,
        )

    @staticmethod
    def _is_transient(error: ApiError) -> bool:
        if error.code == "MALFORMED_REFRESH_RESPONSE" or error.kind == ErrorKind.AUTH:
            return False
        return not error.status or error.status >= 500

    async def _read_refresh_token(self) -> str | None:
        stored = await self._store.get(REFRESH_TOKEN_KEY)
        if stored:
            return stored
        return self._token.refresh_token if self._token else None

    async def _clear_credentials(self) -> None:
        self._token = None
        try:
            await self._store.remove_many([AUTH_TOKEN_KEY, REFRESH_TOKEN_KEY])
            await self._mirror_user_data("")
        except Exception as e:
            logger.error(f"Failed to clear stored credentials: {e}")

    async def _mirror_user_data(self, access_token: str) -> None:
        """Keep the token inside the combined user record in sync."""
        raw = await self._store.get(USER_DATA_KEY)
        if not raw:
            return
        try:
            user_data = json.loads(raw)
        except ValueError as e:
            logger.error(f"Unreadable {USER_DATA_KEY} record: {e}")
            return
        user_data["token"] = access_token
        await self._store.set(USER_DATA_KEY, json.dumps(user_data))

    async def _notify_failure(self) -> None:
        if self._failure_handler is None:
            return
        try:
            result = self._failure_handler()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Auth failure handler raised: {e}")
