"""
Property-based tests for the portal client.

The portal is simulated with httpx.MockTransport; the action token cache is
driven by a fake monotonic clock.
"""

import asyncio
from collections import Counter
from typing import Optional
from urllib.parse import parse_qs

import httpx
from hypothesis import given, settings
from hypothesis import strategies as st

from number_blocker.audit_logger import AuditLogger
from number_blocker.config import Credentials, PortalConfig, PortalEndpoints
from number_blocker.enums import ActionKind, LogLevel, OutcomeAction
from number_blocker.exceptions import AuthenticationError, PortalHTTPError, TransportError
from number_blocker.portal_client import PortalClient

ENDPOINTS = PortalEndpoints(
    entry="/",
    login="/login",
    landing_pages=["/main"],
    navigation="/nav",
    initial_search="/search/initial",
    action_token="/token",
    search="/search",
    action="/action",
    confirm="/confirm",
    release="/release",
    profile="/profile",
    action_form="/form",
)

CREDENTIALS = Credentials(username="agent01", password="s3cret")

SEARCH_PAGE = (
    '<form><input type="hidden" name="org.apache.struts.taglib.html.TOKEN" '
    'value="cont-123"><td>9876543210</td></form>'
)
BLOCKED_PAGE = (
    '<form><input type="hidden" name="org.apache.struts.taglib.html.TOKEN" '
    'value="confirm-456"></form><p>Following Cell Number(s) are Blocked</p>'
)


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakePortal:
    """In-memory stand-in for the portal's form endpoints."""

    def __init__(
        self,
        login_status: int = 200,
        login_body_size: int = 60000,
        login_cookie: bool = True,
        no_records: bool = False,
        action_body: str = BLOCKED_PAGE,
        action_status: int = 200,
        token_body: str = '<input name="captcha" value="TOKEN-1">',
        confirm_status: int = 200,
        confirm_raises: bool = False,
        form_status: int = 200,
        release_body: str = "<p>Number 9876543210 unblocked successfully</p>",
    ) -> None:
        self.login_status = login_status
        self.login_body_size = login_body_size
        self.login_cookie = login_cookie
        self.no_records = no_records
        self.action_body = action_body
        self.action_status = action_status
        self.token_body = token_body
        self.confirm_status = confirm_status
        self.confirm_raises = confirm_raises
        self.form_status = form_status
        self.release_body = release_body
        self.calls: Counter = Counter()
        self.paths: list[str] = []
        self.forms: dict[str, list[dict]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] += 1
        self.paths.append(path)
        if request.method == "POST":
            form = {k: v[0] for k, v in parse_qs(request.content.decode(), keep_blank_values=True).items()}
            self.forms.setdefault(path, []).append(form)

        if path == "/":
            return httpx.Response(200, headers={"set-cookie": "JSESSIONID=entry"}, text="<html>login</html>")
        if path == "/login":
            headers = {"set-cookie": "PD-S-SESSION-ID=abc; Path=/"} if self.login_cookie else {}
            return httpx.Response(self.login_status, headers=headers, text="x" * self.login_body_size)
        if path == "/token":
            return httpx.Response(200, text=self.token_body)
        if path == "/search":
            return httpx.Response(200, text="No Records to Display" if self.no_records else SEARCH_PAGE)
        if path == "/action":
            return httpx.Response(self.action_status, text=self.action_body)
        if path == "/confirm":
            if self.confirm_raises:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(self.confirm_status, text="<html>ok</html>")
        if path == "/release":
            return httpx.Response(200, text=self.release_body)
        if path == "/form":
            return httpx.Response(self.form_status, text="<html>form</html>")
        return httpx.Response(200, text="<html></html>")


def _client(
    portal: FakePortal,
    clock: Optional[FakeClock] = None,
    logger: Optional[AuditLogger] = None,
    **config_overrides,
) -> PortalClient:
    config = PortalConfig(
        base_url="https://portal.example",
        endpoints=ENDPOINTS,
        **config_overrides,
    )
    return PortalClient(
        config,
        transport=httpx.MockTransport(portal.handler),
        clock=clock or FakeClock(),
        logger=logger,
    )


class TestAuthenticationHeuristicProperty:
    """Login succeeds only with fresh cookies and a large enough landing page."""

    @given(
        body_size=st.integers(min_value=0, max_value=2000),
        threshold=st.integers(min_value=0, max_value=2000),
        cookie=st.booleans(),
        status=st.sampled_from([200, 302, 401, 500]),
    )
    @settings(max_examples=100, deadline=None)
    def test_auth_result(self, body_size: int, threshold: int, cookie: bool, status: int) -> None:
        portal = FakePortal(login_status=status, login_body_size=body_size, login_cookie=cookie)

        async def run() -> bool:
            async with _client(portal, auth_min_response_length=threshold) as client:
                return await client.authenticate(CREDENTIALS)

        result = asyncio.run(run())

        expected = status in (200, 302) and cookie and body_size > threshold
        assert result is expected

    def test_login_form_fields(self) -> None:
        portal = FakePortal()

        async def run() -> dict:
            async with _client(portal) as client:
                assert await client.authenticate(CREDENTIALS)
                return client.get_auth_status()

        status = asyncio.run(run())
        login_form = portal.forms["/login"][0]

        assert login_form == {
            "errorMsg": "",
            "username": "agent01",
            "password": "s3cret",
            "login-form-type": "pwd",
        }
        assert portal.calls["/main"] == 1
        assert status == {
            "is_authenticated": True,
            "has_connection": True,
            "has_session_cookies": True,
        }

    def test_default_threshold_rejects_small_page(self) -> None:
        portal = FakePortal(login_body_size=50000)

        async def run() -> bool:
            async with _client(portal) as client:
                return await client.authenticate(CREDENTIALS)

        assert asyncio.run(run()) is False


class TestActionTokenCachingProperty:
    """A token is reused for less than its TTL and refetched afterwards."""

    @given(elapsed=st.floats(min_value=0.0, max_value=29.999))
    @settings(max_examples=50, deadline=None)
    def test_reused_within_ttl(self, elapsed: float) -> None:
        portal = FakePortal()
        clock = FakeClock()

        async def run() -> None:
            async with _client(portal, clock=clock) as client:
                await client.authenticate(CREDENTIALS)
                await client.lookup_and_act("9876543210")
                clock.now += elapsed
                await client.lookup_and_act("9876543211")

        asyncio.run(run())

        assert portal.calls["/token"] == 1
        assert [form["captcha1"] for form in portal.forms["/search"]] == ["TOKEN-1", "TOKEN-1"]

    @given(elapsed=st.floats(min_value=30.0, max_value=3600.0))
    @settings(max_examples=50, deadline=None)
    def test_refetched_after_ttl(self, elapsed: float) -> None:
        portal = FakePortal()
        clock = FakeClock()

        async def run() -> None:
            async with _client(portal, clock=clock) as client:
                await client.authenticate(CREDENTIALS)
                await client.lookup_and_act("9876543210")
                clock.now += elapsed
                await client.lookup_and_act("9876543211")

        asyncio.run(run())

        assert portal.calls["/token"] == 2

    def test_fallback_token_is_not_cached(self) -> None:
        portal = FakePortal(token_body="<html>no inputs</html>")

        async def run() -> None:
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                await client.lookup_and_act("9876543210")
                await client.lookup_and_act("9876543211")

        asyncio.run(run())

        assert portal.calls["/token"] == 2
        assert portal.forms["/search"][0]["captcha"] == "TEST"

    def test_token_dropped_on_forced_reinit(self) -> None:
        portal = FakePortal()

        async def run() -> None:
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                await client.lookup_and_act("9876543210")
                await client.authenticate(CREDENTIALS, force_reinit=True)
                await client.lookup_and_act("9876543211")

        asyncio.run(run())

        assert portal.calls["/token"] == 2


class TestNavigationOnceProperty:
    """Navigation runs once per authenticated session."""

    @given(lookups=st.integers(min_value=1, max_value=8))
    @settings(max_examples=20, deadline=None)
    def test_navigation_once(self, lookups: int) -> None:
        portal = FakePortal()

        async def run() -> None:
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                await asyncio.gather(*(
                    client.lookup_and_act(f"98765432{i:02d}") for i in range(lookups)
                ))

        asyncio.run(run())

        assert portal.calls["/nav"] == 1
        assert portal.calls["/search"] == lookups

    def test_navigation_repeats_after_forced_reinit(self) -> None:
        portal = FakePortal()

        async def run() -> PortalClient:
            client = _client(portal)
            async with client:
                await client.authenticate(CREDENTIALS)
                await client.lookup_and_act("9876543210")
                first_handle = client.session.handle
                generation = client.session.generation

                assert await client.authenticate(CREDENTIALS, force_reinit=True)

                assert client.session.handle is not first_handle
                assert client.session.generation > generation
                assert client.session.navigation_complete is False
                await client.lookup_and_act("9876543211")
            return client

        client = asyncio.run(run())

        assert portal.calls["/nav"] == 2
        assert client.get_auth_status()["has_connection"] is False


class TestLookupAndAct:
    """The composite operation classifies results and tolerates confirmation failures."""

    def test_blocked(self) -> None:
        portal = FakePortal()

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                return await client.lookup_and_act("9876543210", "191")

        outcome = asyncio.run(run())

        assert outcome.success is True
        assert outcome.action == OutcomeAction.BLOCKED
        action_form = portal.forms["/action"][0]
        assert action_form["org.apache.struts.taglib.html.TOKEN"] == "cont-123"
        assert action_form["checkedArray"] == "9876543210"
        assert action_form["numberStatus"] == "191"
        assert action_form["entityGroup"] == "1066"
        assert portal.forms["/confirm"][0] == {"org.apache.struts.taglib.html.TOKEN": "confirm-456"}
        assert portal.forms["/search/initial"][0]["EnttypeId"] == "71"

    @given(body=st.sampled_from([
        "<p>An Error occurred</p>",
        "<p>Your session has expired</p>",
        "<p>Request time out</p>",
    ]))
    @settings(max_examples=10, deadline=None)
    def test_classified_error_pages_are_successful(self, body: str) -> None:
        portal = FakePortal(action_body=body)

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                return await client.lookup_and_act("9876543210")

        outcome = asyncio.run(run())

        assert outcome.action in (
            OutcomeAction.ERROR,
            OutcomeAction.SESSION_EXPIRED,
            OutcomeAction.TIMEOUT,
        )
        assert outcome.success is True
        assert outcome.error is None

    def test_release(self) -> None:
        portal = FakePortal()

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                return await client.lookup_and_act("9876543210", "191", ActionKind.RELEASE)

        outcome = asyncio.run(run())

        assert outcome.action == OutcomeAction.UNBLOCKED
        assert outcome.success is True
        assert outcome.message == "Number 9876543210 unblocked successfully"
        release_form = portal.forms["/release"][0]
        assert release_form["action"] == "unblock"
        assert release_form["checkedArray"] == "9876543210"
        assert release_form["numberStatus"] == "191"
        assert release_form["org.apache.struts.taglib.html.TOKEN"] == "cont-123"
        assert portal.calls["/nav"] == 1
        assert portal.calls["/action"] == 0
        assert portal.calls["/confirm"] == 0

    def test_release_without_confirmation_phrase_is_unknown(self) -> None:
        portal = FakePortal(release_body="<html>done</html>")

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                return await client.perform_lookup_and_act(
                    "9876543210", kind=ActionKind.RELEASE
                )

        outcome = asyncio.run(run())

        assert outcome.action == OutcomeAction.UNKNOWN
        assert outcome.success is True

    def test_no_records_short_circuits(self) -> None:
        portal = FakePortal(no_records=True)

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                return await client.lookup_and_act("1111111111")

        outcome = asyncio.run(run())

        assert outcome.action == OutcomeAction.NO_RECORDS
        assert outcome.success is True
        assert portal.calls["/action"] == 0
        assert portal.calls["/confirm"] == 0

    @given(
        confirm_status=st.sampled_from([200, 400, 500, 503]),
        confirm_raises=st.booleans(),
    )
    @settings(max_examples=20, deadline=None)
    def test_confirmation_failure_keeps_outcome(
        self,
        confirm_status: int,
        confirm_raises: bool,
    ) -> None:
        portal = FakePortal(confirm_status=confirm_status, confirm_raises=confirm_raises)
        logger = AuditLogger(output_stream=_NullStream(), min_level=LogLevel.DEBUG)

        async def run():
            async with _client(portal, logger=logger) as client:
                await client.authenticate(CREDENTIALS)
                return await client.lookup_and_act("9876543210")

        outcome = asyncio.run(run())

        assert outcome.action == OutcomeAction.BLOCKED
        assert outcome.success is True
        if confirm_raises or confirm_status != 200:
            assert any(
                entry.level == LogLevel.WARN and "Confirmation step failed" in entry.message
                for entry in logger.entries
            )

    def test_unknown_pattern_is_logged_with_excerpt(self) -> None:
        portal = FakePortal(action_body="<html>" + "z" * 500 + "</html>")
        logger = AuditLogger(output_stream=_NullStream())

        async def run():
            async with _client(portal, logger=logger) as client:
                await client.authenticate(CREDENTIALS)
                return await client.lookup_and_act("9876543210")

        outcome = asyncio.run(run())

        assert outcome.action == OutcomeAction.UNKNOWN
        assert outcome.success is True
        warnings = [e for e in logger.entries if "Unknown response pattern" in e.message]
        assert len(warnings) == 1
        assert len(warnings[0].data["excerpt"]) == 200

    def test_http_error_raises_and_perform_converts(self) -> None:
        portal = FakePortal(action_status=500)

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                try:
                    await client.lookup_and_act("9876543210")
                    assert False, "Expected PortalHTTPError"
                except PortalHTTPError as e:
                    assert e.status == 500
                return await client.perform_lookup_and_act("9876543210")

        outcome = asyncio.run(run())

        assert outcome.success is False
        assert outcome.action == OutcomeAction.ERROR
        assert "500" in outcome.error

    def test_requires_authentication(self) -> None:
        portal = FakePortal()

        async def run():
            async with _client(portal) as client:
                try:
                    await client.lookup_and_act("9876543210")
                    assert False, "Expected AuthenticationError"
                except AuthenticationError as e:
                    assert e.code == "not_authenticated"
                return await client.perform_lookup_and_act("9876543210")

        outcome = asyncio.run(run())

        assert outcome.success is False
        assert portal.calls["/search"] == 0

    def test_reader_waits_for_reinitialization(self) -> None:
        portal = FakePortal()

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                _, outcome = await asyncio.gather(
                    client.authenticate(CREDENTIALS, force_reinit=True),
                    client.lookup_and_act("9876543210"),
                )
                return outcome

        outcome = asyncio.run(run())

        assert outcome.action == OutcomeAction.BLOCKED
        second_login = [i for i, p in enumerate(portal.paths) if p == "/login"][1]
        assert portal.paths.index("/nav") > second_login


class TestSessionChange:
    """A workflow that outlives its session stops before its next request."""

    def test_workflow_refused_after_forced_relogin(self) -> None:
        paths: list[str] = []

        async def run() -> None:
            reached = asyncio.Event()
            resume = asyncio.Event()

            async def handler(request: httpx.Request) -> httpx.Response:
                path = request.url.path
                paths.append(path)
                if path == "/login":
                    return httpx.Response(
                        200, headers={"set-cookie": "PD-S-SESSION-ID=abc"}, text="x" * 60000
                    )
                if path == "/search/initial":
                    reached.set()
                    await resume.wait()
                return httpx.Response(200, text=SEARCH_PAGE)

            config = PortalConfig(base_url="https://portal.example", endpoints=ENDPOINTS)
            async with PortalClient(config, transport=httpx.MockTransport(handler)) as client:
                await client.authenticate(CREDENTIALS)
                task = asyncio.create_task(client.lookup_and_act("9876543210"))
                await reached.wait()

                assert await client.authenticate(CREDENTIALS, force_reinit=True)
                resume.set()

                try:
                    await task
                    assert False, "Expected TransportError"
                except TransportError as e:
                    assert e.code == "session_changed"

        asyncio.run(run())

        after_search = paths[paths.index("/search/initial") + 1:]
        assert after_search == ["/", "/login", "/main"]


class TestRefreshSession:
    """refresh_session() visits the profile page and returns to the form."""

    def test_refresh_success(self) -> None:
        portal = FakePortal()

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                return await client.refresh_session()

        result = asyncio.run(run())

        assert result.success is True
        assert portal.calls["/profile"] == 1
        assert portal.calls["/form"] == 1

    def test_refresh_form_failure(self) -> None:
        portal = FakePortal(form_status=500)

        async def run():
            async with _client(portal) as client:
                await client.authenticate(CREDENTIALS)
                return await client.refresh_session()

        result = asyncio.run(run())

        assert result.success is False

    def test_refresh_requires_authentication(self) -> None:
        portal = FakePortal()

        async def run() -> None:
            async with _client(portal) as client:
                await client.refresh_session()

        try:
            asyncio.run(run())
            assert False, "Expected AuthenticationError"
        except AuthenticationError:
            pass
        assert portal.calls["/profile"] == 0


class _NullStream:
    def write(self, text: str) -> int:
        return len(text)

    def flush(self) -> None:
        return None
