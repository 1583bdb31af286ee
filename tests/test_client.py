from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, List, Optional

import pytest
import requests

from sample_pages import (
    CHALLENGE_PAGE,
    CHALLENGE_PAGE_WRONG_PHRASE,
    EXPORT_FAILURE_PAGE,
    GUID_ID,
    IMAGE,
    LOGIN_PAGE,
    OVERVIEW_PAGE,
    PASSWORD_PAGE,
    PHRASE,
    POSITIONS_PAGE,
    SAMPLE_OFX,
    TRANSFER_CONFIRMATION_PAGE,
    TRANSFER_PAGE,
    TRANSFER_VALIDATE_PAGE,
    asp_form,
)
from sharebuilder_sync.errors import (
    AuthenticityCheckFailed,
    ExportFailed,
    LoginFailed,
    MissingToken,
    TransferConfirmationFailed,
    TransferSetupFailed,
    TransferValidationFailed,
    UnsupportedOperation,
)
from sharebuilder_sync.portal.client import PortalCredentials, SessionState, ShareBuilderClient
from sharebuilder_sync.portal.variants import SHAREBUILDER, SHAREBUILDER_LEGACY


BASE = "https://sb.example.test/sharebuilder"
USERNAME_REPLY = "<html><body>" + asp_form("vs1b", "ev1b") + "</body></html>"

_VIEWS = "ctl00$ctl00$MainContent$MainContent$ucView$c$views$c$"
_PASSWORD_FIELD = _VIEWS + "ctl08$txtPassword"


@dataclass
class FakeResponse:
    text: str = ""
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    @property
    def is_redirect(self) -> bool:
        return self.status_code in (301, 302, 303, 307, 308)


def redirect() -> FakeResponse:
    return FakeResponse(text="", status_code=302)


@dataclass
class Call:
    method: str
    url: str
    data: Optional[List[tuple]]
    kwargs: dict

    @property
    def form(self) -> dict:
        return dict(self.data or [])


class FakeHttp:
    """Serves canned responses in order and records every request."""

    def __init__(self, responses: List[Any]) -> None:
        self.headers: dict = {}
        self.responses = list(responses)
        self.calls: List[Call] = []

    def _next(self) -> FakeResponse:
        if not self.responses:
            raise AssertionError("unexpected extra request")
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(Call("GET", url, None, kwargs))
        return self._next()

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        data = kwargs.pop("data", None)
        self.calls.append(Call("POST", url, data, kwargs))
        return self._next()

    def posts(self) -> List[Call]:
        return [c for c in self.calls if c.method == "POST"]


def login_responses(challenge: str = CHALLENGE_PAGE) -> List[FakeResponse]:
    return [
        FakeResponse(LOGIN_PAGE),
        FakeResponse(USERNAME_REPLY),
        FakeResponse(challenge),
        FakeResponse(PASSWORD_PAGE),
        FakeResponse(OVERVIEW_PAGE),
    ]


def make_client(responses: List[Any], *, variant=SHAREBUILDER, **kwargs: Any) -> tuple[ShareBuilderClient, FakeHttp]:
    http = FakeHttp(responses)
    client = ShareBuilderClient(
        creds=PortalCredentials(username="alice", password="s3cret", image=IMAGE, phrase=PHRASE),
        variant=variant,
        base_url=BASE,
        http=http,
        timeout_seconds=5,
        **kwargs,
    )
    return client, http


def logged_in(extra: List[Any], *, variant=SHAREBUILDER) -> tuple[ShareBuilderClient, FakeHttp]:
    client, http = make_client(login_responses() + list(extra), variant=variant)
    client.login()
    return client, http


def test_login_happy_path() -> None:
    client, http = make_client(login_responses())
    assert client.state is SessionState.UNAUTHENTICATED

    assert client.login() is client
    assert client.state is SessionState.AUTHENTICATED
    assert [c.method for c in http.calls] == ["GET", "POST", "POST", "POST", "GET"]
    assert http.calls[0].url == f"{BASE}/authentication/signin.aspx"
    assert http.calls[-1].url == f"{BASE}/account/overview.aspx"
    assert all(c.kwargs.get("timeout") == 5 for c in http.calls)
    assert "User-Agent" in http.headers
    assert http.headers["Referer"] == f"{BASE}/authentication/signin.aspx"

    username, challenge, password = http.posts()
    assert username.form[_VIEWS + "ucUsername$ctl01$txtUsername"] == "alice"
    assert challenge.form["__EVENTTARGET"] == _VIEWS + "nextViewPostBack"
    assert password.form[_PASSWORD_FIELD] == "s3cret"


def test_each_post_carries_the_latest_tokens() -> None:
    _, http = logged_in([])
    username, challenge, password = http.posts()

    assert username.form["__VIEWSTATE"] == "vs1"
    assert username.form["__EVENTVALIDATION"] == "ev1"
    assert username.form[GUID_ID] == "g1"

    assert challenge.form["__VIEWSTATE"] == "vs1b"
    assert challenge.form["__EVENTVALIDATION"] == "ev1b"
    # GUID fields persist until the site sends a new value.
    assert challenge.form[GUID_ID] == "g1"

    assert password.form["__VIEWSTATE"] == "vs2"

    # Empty tokens are never sent.
    assert all(value for c in http.posts() for _, value in c.data)
    assert "__RequestVerificationToken" not in password.form


def test_unverified_challenge_never_sends_password() -> None:
    client, http = make_client(login_responses(CHALLENGE_PAGE_WRONG_PHRASE))

    with pytest.raises(AuthenticityCheckFailed):
        client.login()

    assert len(http.posts()) == 2
    assert not any(_PASSWORD_FIELD in c.form for c in http.posts())
    assert not any("s3cret" in v for c in http.posts() for _, v in c.data)
    assert client.state is SessionState.AWAITING_CHALLENGE_ACK


def test_unverified_challenge_page_is_saved(tmp_path) -> None:
    client, _ = make_client(login_responses(CHALLENGE_PAGE_WRONG_PHRASE), debug_dir=str(tmp_path))
    with pytest.raises(AuthenticityCheckFailed):
        client.login()
    assert (tmp_path / "challenge_unverified.html").exists()


def test_login_http_error_raises_login_failed() -> None:
    client, _ = make_client([FakeResponse("<html>down</html>", status_code=503)])
    with pytest.raises(LoginFailed):
        client.login()


def test_login_transport_error_raises_login_failed() -> None:
    client, _ = make_client([requests.ConnectionError("boom")])
    with pytest.raises(LoginFailed):
        client.login()


def test_operations_require_login() -> None:
    client, _ = make_client([])
    with pytest.raises(LoginFailed):
        client.accounts()
    with pytest.raises(LoginFailed):
        client.positions("12345678")


def test_accounts_decoded_once_from_landing_page() -> None:
    client, http = logged_in([])
    n_calls = len(http.calls)

    accounts = client.accounts()
    assert set(accounts) == {"12345678", "87654321"}
    assert accounts["12345678"].balance == Decimal("3040.16")

    accounts.clear()
    assert set(client.accounts()) == {"12345678", "87654321"}
    assert len(http.calls) == n_calls


def test_positions() -> None:
    client, http = logged_in(
        [FakeResponse(OVERVIEW_PAGE), FakeResponse(OVERVIEW_PAGE), FakeResponse(POSITIONS_PAGE)]
    )
    positions = client.positions("12345678")

    assert [p.symbol for p in positions] == ["PERL", "PYTH"]
    select = http.posts()[-1]
    assert select.url == f"{BASE}/account/overview.aspx"
    assert select.form["ctl00$ctl00$MainContent$MainContent$ucView$c$acctQuickLinks$hidAccountNumber"] == "12345678"
    assert select.form["__VIEWSTATE"] == "vs4"
    assert http.calls[-1].url == f"{BASE}/account/portfolio/positions.aspx"


def test_transactions_export_and_list() -> None:
    ofx = SAMPLE_OFX.replace("\n", "\r\n")
    client, http = logged_in(
        [FakeResponse(OVERVIEW_PAGE), FakeResponse(OVERVIEW_PAGE), FakeResponse(ofx)]
    )

    records = client.transaction_list("12345678", date(2011, 1, 1), "06/01/2011")
    assert [r.type for r in records] == ["buy", "sell", "reinvest"]

    download = http.posts()[-1]
    assert download.url == f"{BASE}/Account/Records/History.aspx"
    assert download.form[_VIEWS + "txtDateRange"] == "01/01/2011 to 06/01/2011"
    assert download.form[_VIEWS + "ddlFinancialSoftware"] == "OFX"
    assert download.form[_VIEWS + "ddlAccount"] == "12345678"


def test_transactions_strip_carriage_returns() -> None:
    client, _ = logged_in(
        [FakeResponse(OVERVIEW_PAGE), FakeResponse(OVERVIEW_PAGE), FakeResponse("<OFX>\r\n</OFX>\r\n")]
    )
    assert "\r" not in client.transactions("12345678", "2011-01-01", "2011-06-01")


def test_transactions_default_window_is_six_months() -> None:
    client, http = logged_in(
        [FakeResponse(OVERVIEW_PAGE), FakeResponse(OVERVIEW_PAGE), FakeResponse("<OFX></OFX>")]
    )
    client.transactions("12345678", end=date(2011, 8, 31))
    assert http.posts()[-1].form[_VIEWS + "txtDateRange"] == "02/28/2011 to 08/31/2011"


def test_recent_transactions_window() -> None:
    client, http = logged_in(
        [FakeResponse(OVERVIEW_PAGE), FakeResponse(OVERVIEW_PAGE), FakeResponse("<OFX></OFX>")]
    )
    client.recent_transactions("12345678", days=10)
    end = date.today()
    start = end - timedelta(days=10)
    expected = f"{start:%m/%d/%Y} to {end:%m/%d/%Y}"
    assert http.posts()[-1].form[_VIEWS + "txtDateRange"] == expected


def test_transactions_failure_marker_raises() -> None:
    client, _ = logged_in(
        [FakeResponse(OVERVIEW_PAGE), FakeResponse(OVERVIEW_PAGE), FakeResponse(EXPORT_FAILURE_PAGE)]
    )
    with pytest.raises(ExportFailed):
        client.transactions("12345678", "2011-01-01", "2011-06-01")


def test_legacy_transactions_default_to_all_accounts() -> None:
    client, http = logged_in([FakeResponse(SAMPLE_OFX)], variant=SHAREBUILDER_LEGACY)

    records = client.transaction_list()
    assert len(records) == 3

    download = http.calls[-1]
    assert download.url == f"{BASE}/download.qfx"
    assert download.form == {
        "type": "OFX",
        "TIMEFRAME": "VARIABLE",
        "account": "ALL",
        "startDate": "01/01/2000",
        "endDate": "01/01/2038",
    }


def test_transfer_unsupported_on_current_site() -> None:
    client, _ = logged_in([])
    with pytest.raises(UnsupportedOperation):
        client.transfer("1", "2", Decimal("10.00"))


def _transfer_responses() -> List[FakeResponse]:
    return [
        FakeResponse(TRANSFER_PAGE),
        redirect(),
        FakeResponse(TRANSFER_VALIDATE_PAGE),
        redirect(),
        FakeResponse(TRANSFER_CONFIRMATION_PAGE),
    ]


def test_transfer_now() -> None:
    client, http = logged_in(_transfer_responses(), variant=SHAREBUILDER_LEGACY)

    assert client.transfer("111", "222", Decimal("25.00")) == "90210"

    transfer_input, validate = http.posts()[-2:]
    assert transfer_input.url == f"{BASE}/INGDirect/deposit_transfer_input.vm"
    assert transfer_input.form == {
        "action": "continue",
        "amount": "25.00",
        "sourceAccountNumber": "111",
        "destinationAccountNumber": "222",
        "depositTransferType": "NOW",
        "pageToken": "pt1",
    }
    assert transfer_input.kwargs.get("allow_redirects") is False
    assert validate.form == {"action": "submit", "pageToken": "pt2"}


def test_transfer_scheduled() -> None:
    client, http = logged_in(_transfer_responses(), variant=SHAREBUILDER_LEGACY)

    client.transfer("111", "222", "25.00", when="2011-06-01")

    transfer_input = http.posts()[-2]
    assert transfer_input.form["depositTransferType"] == "SCHEDULED"
    assert transfer_input.form["scheduleDate"] == "06/01/2011"


def test_transfer_without_page_token_is_not_posted() -> None:
    client, http = logged_in([FakeResponse("<html>no token</html>")], variant=SHAREBUILDER_LEGACY)
    n_posts = len(http.posts())

    with pytest.raises(MissingToken) as exc:
        client.transfer("111", "222", "25.00")
    assert exc.value.names == ("pageToken",)
    assert len(http.posts()) == n_posts


def test_transfer_setup_failure() -> None:
    client, _ = logged_in(
        [FakeResponse(TRANSFER_PAGE), FakeResponse(TRANSFER_PAGE)], variant=SHAREBUILDER_LEGACY
    )
    with pytest.raises(TransferSetupFailed) as exc:
        client.transfer("111", "222", "25.00")
    assert exc.value.stage == "setup"


def test_transfer_validation_failure() -> None:
    responses = _transfer_responses()
    responses[3] = FakeResponse(TRANSFER_VALIDATE_PAGE)
    client, _ = logged_in(responses[:4], variant=SHAREBUILDER_LEGACY)

    with pytest.raises(TransferValidationFailed) as exc:
        client.transfer("111", "222", "25.00")
    assert exc.value.stage == "validate"


def test_transfer_missing_confirmation_number() -> None:
    responses = _transfer_responses()
    responses[-1] = FakeResponse("<html><body>Thanks!</body></html>")
    client, _ = logged_in(responses, variant=SHAREBUILDER_LEGACY)

    with pytest.raises(TransferConfirmationFailed):
        client.transfer("111", "222", "25.00")


def test_capture_pages_writes_every_step(tmp_path) -> None:
    client, _ = make_client(login_responses(), debug_dir=str(tmp_path), capture_pages=True)
    client.login()
    saved = sorted(p.name for p in tmp_path.iterdir())
    assert saved[0] == "step_01_login_page.html"
    assert len(saved) == 5


class RecordingSession:
    def __init__(self) -> None:
        self.headers: dict = {}
        self.closed = False

    def close(self) -> None:
        self.closed = True


def test_context_manager_closes_own_session(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(requests, "Session", RecordingSession)
    with ShareBuilderClient(
        creds=PortalCredentials(username="alice", password="s3cret", image=IMAGE, phrase=PHRASE),
        base_url=BASE,
    ) as client:
        session = client.http
        assert session.headers["User-Agent"]
        assert not session.closed
    assert session.closed


def test_context_manager_leaves_injected_transport_open() -> None:
    client, http = make_client([])
    http.close = lambda: pytest.fail("injected transport must stay open")
    with client:
        pass
    assert http.calls == []
