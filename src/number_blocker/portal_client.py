"""
Portal client for the operator's cell number block/release pages.

This module replays the portal's form-post sequence over one shared
httpx.AsyncClient. It owns the PortalSession: login cookies, the once-per-
session navigation step and the short-lived action token.

Workflow per identifier:
1. Navigation to the block/release module (once per authenticated session)
2. Initial search for the identifier
3. Action token (cached for token_ttl_seconds)
4. Final search; "No Records to Display" ends the workflow
5. Block or release request carrying the page's continuation token
6. Best-effort confirmation of a block result page

Every request of one workflow is bound to the session generation it started
on. Once a re-login replaces that session the workflow fails with a
retryable TransportError instead of continuing on the new connection.
"""

import asyncio
import time
from typing import Callable, Optional

import httpx

from .audit_logger import AuditLogger
from .classifier import (
    CONTINUATION_TOKEN_FIELD,
    ResponseClassifier,
    extract_action_token,
    extract_continuation_token,
    has_no_records,
)
from .config import Credentials, PortalConfig
from .enums import ActionKind, LogLevel, OutcomeAction
from .exceptions import (
    AuthenticationError,
    NumberBlockerError,
    PortalHTTPError,
    TransportError,
)
from .models import OperationOutcome, PortalSession, RefreshResult

# Search form fields the portal expects but never reads back
_BLANK_SEARCH_FIELDS = (
    "hlr",
    "cellNoCategoryType",
    "cellNoCategory",
    "cellNoCategoryPatternName",
    "minimumPrice",
    "maximumPrice",
    "inSeriesVal",
)

UNKNOWN_EXCERPT_LENGTH = 200
OUTCOME_EXCERPT_LENGTH = 1000


class PortalClient:
    """
    Async client for one authenticated portal session.

    All coroutines of a run share a single instance. Re-authentication is
    serialized by an internal lock and callers that arrive while it runs wait
    for it to finish before checking the authenticated flag. Workflows that
    were already running when a re-login started wait for it as well and are
    then refused with a retryable session_changed error.
    """

    DEFAULT_HEADERS = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
        "Upgrade-Insecure-Requests": "1",
    }

    def __init__(
        self,
        config: PortalConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[AuditLogger] = None,
        classifier: Optional[ResponseClassifier] = None,
    ) -> None:
        """
        Initialize the portal client.

        Args:
            config: Portal URL, endpoints, form defaults and heuristics
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Monotonic clock for the action token cache
            logger: Optional audit logger
            classifier: Response classifier; the default rule table if omitted
        """
        self._config = config
        self._transport = transport
        self._clock = clock
        self._logger = logger
        self._classifier = classifier or ResponseClassifier()

        self._session = PortalSession()
        self._auth_lock = asyncio.Lock()
        self._navigation_lock = asyncio.Lock()
        self._token_lock = asyncio.Lock()

    async def __aenter__(self) -> "PortalClient":
        self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()

    @property
    def session(self) -> PortalSession:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session.authenticated

    def init(self) -> None:
        """Create the connection handle if there is none."""
        if self._session.handle is not None:
            return
        self._session.handle = httpx.AsyncClient(
            base_url=self._config.base_url,
            verify=self._config.verify_tls,
            timeout=httpx.Timeout(self._config.timeout_seconds),
            follow_redirects=True,
            headers={"User-Agent": self._config.user_agent, **self.DEFAULT_HEADERS},
            transport=self._transport,
        )

    async def dispose(self) -> None:
        """Close the connection handle and forget all session state."""
        handle = self._session.handle
        self._session.reset()
        if handle is not None:
            await handle.aclose()

    def get_auth_status(self) -> dict:
        return {
            "is_authenticated": self._session.authenticated,
            "has_connection": self._session.handle is not None,
            "has_session_cookies": bool(self._session.session_cookies),
        }

    def _url(self, path: str) -> str:
        return self._config.base_url.rstrip("/") + path

    @staticmethod
    def _is_ok(response: httpx.Response) -> bool:
        return 200 <= response.status_code < 300

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
        expect_ok: bool = True,
        generation: Optional[int] = None,
    ) -> httpx.Response:
        """
        Send one request on the current handle.

        With a generation, the request first waits out a running login and is
        refused if the session was replaced since that generation.

        Raises:
            TransportError: If there is no open handle, the session changed or
                the request fails
            PortalHTTPError: If expect_ok is set and the status is not 2xx
        """
        if generation is not None:
            await self._wait_for_auth()
            if generation != self._session.generation:
                raise TransportError(
                    code="session_changed",
                    message=f"Session was re-established before {method} {path}",
                    details={"path": path},
                )

        handle = self._session.handle
        if handle is None or handle.is_closed:
            raise TransportError(
                code="no_connection",
                message=f"No open connection for {method} {path}",
                details={"path": path},
            )

        start_time = time.perf_counter()
        try:
            response = await handle.request(method, path, data=data, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(
                code="transport_error",
                message=f"{method} {path} failed: {e}",
                details={"path": path, "error_type": type(e).__name__},
            ) from e

        self._log_debug(
            f"{method} {path} -> {response.status_code}",
            {"response_time_ms": round((time.perf_counter() - start_time) * 1000, 1)},
        )

        if expect_ok and not self._is_ok(response):
            raise PortalHTTPError(
                status=response.status_code,
                message=f"{method} {path} returned HTTP {response.status_code}",
                details={"path": path},
            )
        return response

    async def authenticate(
        self,
        credentials: Credentials,
        captcha: str = "",
        force_reinit: bool = False,
    ) -> bool:
        """
        Log in to the portal.

        Args:
            credentials: Username and password
            captcha: Optional captcha value sent with the login form
            force_reinit: Close the connection and discard all session state first

        Returns:
            True only if the login response set cookies and is at least as
            large as a real landing page

        Raises:
            TransportError: If the portal cannot be reached
        """
        async with self._auth_lock:
            if force_reinit:
                self._log(LogLevel.INFO, "Force reinitializing connection for session recovery")
                await self.dispose()
            else:
                self._session.invalidate()

            self.init()
            endpoints = self._config.endpoints

            entry = await self._request("GET", endpoints.entry, expect_ok=False)
            if not self._is_ok(entry):
                self._log(
                    LogLevel.WARN,
                    f"Failed to fetch login page: HTTP {entry.status_code}",
                )
                return False

            form = {
                "errorMsg": "",
                "username": credentials.username,
                "password": credentials.password,
                "login-form-type": "pwd",
            }
            if captcha:
                form["captcha"] = captcha

            login = await self._request(
                "POST",
                endpoints.login,
                data=form,
                headers={"Referer": self._url(endpoints.entry), "Origin": self._config.base_url},
                expect_ok=False,
            )

            if not (self._is_ok(login) or login.status_code == 302):
                self._log(
                    LogLevel.WARN,
                    f"Authentication failed - HTTP status: {login.status_code}",
                )
                return False

            cookies = [
                cookie
                for response in (*login.history, login)
                for cookie in response.headers.get_list("set-cookie")
            ]
            body_length = len(login.text)
            if not cookies or body_length <= self._config.auth_min_response_length:
                self._log(
                    LogLevel.WARN,
                    f"Authentication failed - invalid response ({body_length} chars)",
                    {"has_cookies": bool(cookies), "username": credentials.username},
                )
                return False

            self._session.session_cookies = cookies
            self._session.authenticated = True
            self._log(LogLevel.INFO, "Authentication successful", {"username": credentials.username})

            for page in endpoints.landing_pages:
                try:
                    await self._request("GET", page)
                except NumberBlockerError as e:
                    self._log(
                        LogLevel.WARN,
                        "Landing page visit failed, but authentication succeeded",
                        {"page": page, "error": e.message},
                    )

            return True

    async def _wait_for_auth(self) -> None:
        if self._auth_lock.locked():
            async with self._auth_lock:
                pass

    async def _require_session(self) -> int:
        """
        Wait out a running (re)authentication, then demand a live session.

        Returns:
            The generation of the session the caller may work on

        Raises:
            AuthenticationError: If the session is not authenticated
        """
        await self._wait_for_auth()
        if not self._session.authenticated:
            raise AuthenticationError(
                code="not_authenticated",
                message="Not authenticated. Call authenticate() first.",
            )
        return self._session.generation

    async def _ensure_navigation(self, generation: int) -> None:
        if self._session.navigation_complete:
            return
        async with self._navigation_lock:
            if self._session.navigation_complete:
                return
            await self._request("GET", self._config.endpoints.navigation, generation=generation)
            # A re-login while navigating starts a new session; leave it unmarked
            if generation == self._session.generation:
                self._session.navigation_complete = True
            self._log_debug("Navigation complete (cached for session)")

    async def _get_action_token(self, generation: int) -> str:
        """Return the cached action token or fetch a new one."""
        if self._session.token_valid(self._clock()):
            return self._session.action_token

        async with self._token_lock:
            now = self._clock()
            if self._session.token_valid(now):
                return self._session.action_token

            response = await self._request(
                "POST",
                self._config.endpoints.action_token,
                expect_ok=False,
                generation=generation,
            )
            token = extract_action_token(response.text) if self._is_ok(response) else None
            if token is None:
                self._log(
                    LogLevel.WARN,
                    "No action token in response, using fallback",
                    {"status_code": response.status_code},
                )
                return self._config.fallback_action_token

            if generation == self._session.generation:
                self._session.cache_token(token, now, self._config.token_ttl_seconds)
            return token

    def _search_fields(self, identifier: str, status_code: str) -> dict:
        fields = {"numberStatus": status_code, "cellNumber": identifier}
        fields.update({name: "" for name in _BLANK_SEARCH_FIELDS})
        fields.update(self._config.form_defaults)
        return fields

    def _action_request(
        self,
        kind: ActionKind,
        identifier: str,
        status_code: str,
        search_body: str,
    ) -> tuple[str, dict]:
        """Endpoint and form of the block or release submission."""
        continuation = extract_continuation_token(search_body)
        if kind == ActionKind.RELEASE:
            return self._config.endpoints.release, {
                CONTINUATION_TOKEN_FIELD: continuation,
                "action": "unblock",
                **self._search_fields(identifier, status_code),
                "checkedArray": identifier,
            }

        return self._config.endpoints.action, {
            CONTINUATION_TOKEN_FIELD: continuation,
            "EnttypeId": "",
            "usertype": "",
            "entTypeId": "",
            "entity_ID": "",
            **self._search_fields(identifier, status_code),
            "checkbox": "checkbox",
            "checkedArray": identifier,
            "pageNumber": "1",
        }

    async def lookup_and_act(
        self,
        identifier: str,
        status_code: str = "191",
        kind: ActionKind = ActionKind.BLOCK,
    ) -> OperationOutcome:
        """
        Search for one identifier and submit the block or release request.

        Args:
            identifier: The phone number
            status_code: Target number status code
            kind: Whether to block or release the number

        Returns:
            A classified OperationOutcome

        Raises:
            AuthenticationError: If there is no authenticated session
            TransportError: If a request could not be sent or the session was
                re-established while the workflow ran
            PortalHTTPError: If a required step answered with a non-2xx status
        """
        generation = await self._require_session()
        endpoints = self._config.endpoints
        navigation_referer = {"Referer": self._url(endpoints.navigation)}

        await self._ensure_navigation(generation)

        await self._request(
            "POST",
            endpoints.initial_search,
            data={
                "EnttypeId": "71",
                "usertype": "",
                "entTypeId": "71",
                "entity_ID": "",
                **self._search_fields(identifier, status_code),
            },
            headers=navigation_referer,
            generation=generation,
        )

        action_token = await self._get_action_token(generation)

        search = await self._request(
            "POST",
            endpoints.search,
            data={
                CONTINUATION_TOKEN_FIELD: "",
                **self._search_fields(identifier, status_code),
                "captcha1": action_token,
                "txtCaptcha": "",
                "captcha": action_token,
            },
            headers=navigation_referer,
            generation=generation,
        )
        search_body = search.text

        if has_no_records(search_body):
            return OperationOutcome.classified(
                identifier,
                OutcomeAction.NO_RECORDS,
                self._classifier.message_for(OutcomeAction.NO_RECORDS, identifier),
            )

        path, form = self._action_request(kind, identifier, status_code, search_body)
        response = await self._request(
            "POST",
            path,
            data=form,
            headers={"Origin": self._config.base_url, "Referer": self._url(endpoints.search)},
            generation=generation,
        )
        body = response.text

        action = self._classifier.classify(body)
        if action == OutcomeAction.UNKNOWN:
            self._log(
                LogLevel.WARN,
                f"Unknown response pattern for {identifier}",
                {"excerpt": body[:UNKNOWN_EXCERPT_LENGTH], "kind": kind.value},
            )
        elif action == OutcomeAction.SESSION_EXPIRED:
            self._log(LogLevel.WARN, f"Session expired detected for {identifier}")

        if kind == ActionKind.BLOCK:
            await self._confirm(identifier, body, generation)

        return OperationOutcome.classified(
            identifier,
            action,
            self._classifier.message_for(action, identifier),
            response_excerpt=body[:OUTCOME_EXCERPT_LENGTH],
        )

    async def _confirm(self, identifier: str, action_body: str, generation: int) -> None:
        """Acknowledge the result page; failures are only logged."""
        endpoints = self._config.endpoints
        try:
            await self._request(
                "POST",
                endpoints.confirm,
                data={CONTINUATION_TOKEN_FIELD: extract_continuation_token(action_body)},
                headers={"Origin": self._config.base_url, "Referer": self._url(endpoints.action)},
                generation=generation,
            )
        except NumberBlockerError as e:
            self._log(
                LogLevel.WARN,
                f"Confirmation step failed for {identifier}, but the action may have succeeded",
                {"error": e.message},
            )

    async def perform_lookup_and_act(
        self,
        identifier: str,
        status_code: str = "191",
        kind: ActionKind = ActionKind.BLOCK,
    ) -> OperationOutcome:
        """Like lookup_and_act(), but returns failures as an outcome."""
        try:
            return await self.lookup_and_act(identifier, status_code, kind)
        except NumberBlockerError as e:
            self._log_error(f"Lookup and act failed for {identifier}", e)
            return OperationOutcome.failure(
                identifier,
                message=f"Operation failed for {identifier}: {e.message}",
                error=e.message,
            )

    async def refresh_session(self) -> RefreshResult:
        """
        Keep the server-side session alive by visiting the profile page and
        returning to the action form.

        Raises:
            AuthenticationError: If there is no authenticated session
        """
        generation = await self._require_session()
        endpoints = self._config.endpoints

        try:
            profile = await self._request(
                "GET", endpoints.profile, expect_ok=False, generation=generation
            )
            if not self._is_ok(profile):
                self._log(LogLevel.WARN, "Profile page visit failed, but continuing")

            form = await self._request(
                "GET", endpoints.action_form, expect_ok=False, generation=generation
            )
        except TransportError as e:
            self._log_error("Session refresh failed", e)
            return RefreshResult(success=False, message="Session refresh failed", error=e.message)

        if self._is_ok(form):
            self._log(LogLevel.INFO, "Session refreshed successfully")
            return RefreshResult(success=True, message="Session refreshed by visiting profile page")

        self._log(LogLevel.WARN, "Action form navigation failed after profile visit")
        return RefreshResult(
            success=False,
            message="Profile visited but action form navigation failed",
        )

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "PortalClient", message, data or {})

    def _log_debug(self, message: str, data: Optional[dict] = None) -> None:
        self._log(LogLevel.DEBUG, message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error("PortalClient", message, error=error)
