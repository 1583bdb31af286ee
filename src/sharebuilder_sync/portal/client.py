from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Union

import requests
from dateutil.relativedelta import relativedelta

from ..errors import (
    AuthenticityCheckFailed,
    ExportFailed,
    LoginFailed,
    ShareBuilderError,
    TransferConfirmationFailed,
    TransferSetupFailed,
    TransferStageFailed,
    TransferValidationFailed,
    UnsupportedOperation,
)
from ..models import AccountRecord, PositionRecord, TransactionRecord
from ..ofx import normalize, parse_ofx
from ..util.dates import format_us_date, parse_us_date
from . import scraper
from .tokens import TokenStore
from .variants import SHAREBUILDER, SiteVariant, Step


logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"

_TRANSFER_FAILURES: Mapping[str, type[TransferStageFailed]] = {
    "setup": TransferSetupFailed,
    "validate": TransferValidationFailed,
    "confirm": TransferConfirmationFailed,
}

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class Transport(Protocol):
    """The slice of `requests.Session` the driver needs (cookie persistence is the transport's job)."""

    headers: Any

    def get(self, url: str, **kwargs: Any) -> requests.Response: ...

    def post(self, url: str, **kwargs: Any) -> requests.Response: ...


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_CHALLENGE_ACK = "awaiting_challenge_ack"
    AWAITING_PASSWORD = "awaiting_password"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class PortalCredentials:
    """
    `image` and `phrase` are the anti-phishing secrets chosen on the site. They are only compared
    against the challenge page, never sent.
    """

    username: str
    password: str = field(repr=False)
    image: str = field(repr=False)
    phrase: str = field(repr=False)


class ShareBuilderClient:
    """
    Replays the site's stateful form sequences over plain HTTP.

    Every response is scraped for hidden state tokens before the next request is built, so requests
    within one client must stay strictly sequential. Independent clients share nothing.
    A failed operation leaves the session indeterminate; discard the client and log in again.
    """

    def __init__(
        self,
        *,
        creds: PortalCredentials,
        variant: SiteVariant = SHAREBUILDER,
        base_url: str = "",
        http: Optional[Transport] = None,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        debug_dir: Optional[str] = None,
        capture_pages: bool = False,
    ) -> None:
        self.creds = creds
        self.variant = variant
        self.base_url = (base_url or variant.base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds

        self._own_session: Optional[requests.Session] = requests.Session() if http is None else None
        self.http: Transport = http if http is not None else self._own_session
        if user_agent:
            self.http.headers["User-Agent"] = user_agent

        self.state = SessionState.UNAUTHENTICATED
        self.tokens = TokenStore()

        self._account_screen: Optional[str] = None
        self._accounts: Optional[dict[str, AccountRecord]] = None

        self._debug_dir = Path(debug_dir) if debug_dir else None
        self._capture_pages = bool(capture_pages and debug_dir)
        self._step_counter = 0

    def close(self) -> None:
        """Close the HTTP session if this client created it; an injected transport is left open."""
        if self._own_session is not None:
            self._own_session.close()

    def __enter__(self) -> "ShareBuilderClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------ login

    def login(self) -> "ShareBuilderClient":
        if self.state is not SessionState.UNAUTHENTICATED:
            raise LoginFailed(f"Login already attempted on this session (state={self.state.value})")

        context = {"username": self.creds.username, "password": self.creds.password}
        logger.info("Logging in to %s as %s", self.variant.display_name, self.creds.username)

        response = None
        for step in self.variant.login_steps:
            response = self._send(step, context, failure=LoginFailed)
            if step.verify_challenge:
                self._verify_challenge(step, response)
            if step.enters:
                self.state = SessionState(step.enters)
                logger.debug("Session state -> %s", self.state.value)

        if self.state is not SessionState.AUTHENTICATED or response is None:
            raise LoginFailed(f"Login sequence ended in state={self.state.value}")

        self._account_screen = response.text
        logger.info("Logged in.")
        return self

    def _verify_challenge(self, step: Step, response: requests.Response) -> None:
        ok = scraper.extract_verification_markers(
            response.text,
            self.creds.image,
            self.creds.phrase,
            image_pattern=self.variant.challenge_image_pattern,
        )
        if not ok:
            self._save_page(f"{step.name}_unverified", response.text)
            raise AuthenticityCheckFailed(
                "Couldn't verify authenticity of login page (security image/phrase not shown); "
                "password was not sent."
            )

    def _require_authenticated(self) -> None:
        if self.state is not SessionState.AUTHENTICATED:
            raise LoginFailed(f"Not authenticated (state={self.state.value}); call login() first")

    # ------------------------------------------------------------- operations

    def accounts(self) -> dict[str, AccountRecord]:
        """Accounts keyed by number, decoded once from the post-login landing page."""
        self._require_authenticated()
        if self._accounts is None:
            try:
                rows = scraper.extract_accounts(self._account_screen or "", self.variant.account_rows)
            except ShareBuilderError:
                self._save_page("accounts_malformed", self._account_screen or "")
                raise
            self._accounts = {a.number: a for a in rows}
            logger.info("Found %d accounts.", len(self._accounts))
        return dict(self._accounts)

    def positions(self, account: str) -> list[PositionRecord]:
        self._require_authenticated()
        response = self._run(self.variant.positions_steps, {"account": account}, failure=ExportFailed)
        try:
            positions = scraper.extract_positions(response.text)
        except ShareBuilderError:
            self._save_page("positions_malformed", response.text)
            raise
        logger.info("Found %d positions for account %s.", len(positions), account)
        return positions

    def transactions(
        self,
        account: Optional[str] = None,
        start: Union[date, str, None] = None,
        end: Union[date, str, None] = None,
    ) -> str:
        """Raw OFX export (carriage returns removed) for `account` between `start` and `end`."""
        self._require_authenticated()
        start_d, end_d = self._history_window(start, end)
        account = account or self.variant.default_account
        if not account:
            raise ValueError("account is required for this site variant")

        context = {"account": account, "start": format_us_date(start_d), "end": format_us_date(end_d)}
        logger.info("Exporting OFX for account %s (%s to %s)", account, context["start"], context["end"])
        response = self._run(self.variant.transactions_steps, context, failure=ExportFailed)

        ofx = response.text.replace("\r", "")
        if self.variant.export_failure_marker and self.variant.export_failure_marker in ofx:
            self._save_page("transactions_failed", ofx)
            raise ExportFailed("OFX returned, but with a failure.")
        return ofx

    def recent_transactions(self, account: Optional[str] = None, days: int = 30) -> str:
        end = date.today()
        return self.transactions(account, end - timedelta(days=days or 30), end)

    def transaction_list(
        self,
        account: Optional[str] = None,
        start: Union[date, str, None] = None,
        end: Union[date, str, None] = None,
        *,
        strict: bool = False,
    ) -> list[TransactionRecord]:
        ofx = self.transactions(account, start, end)
        return normalize(parse_ofx(ofx), strict=strict)

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: Union[Decimal, str],
        when: Union[date, str, None] = None,
    ) -> str:
        """
        Move money between two accounts now, or on `when`. Returns the site's confirmation number.

        Nothing here can undo a transfer once the validate stage went through.
        """
        self._require_authenticated()
        if not self.variant.supports_transfer:
            raise UnsupportedOperation(f"{self.variant.display_name} has no transfer sequence")

        when_d = self._as_date(when)
        context = {
            "from_account": from_account,
            "to_account": to_account,
            "amount": str(amount),
            "transfer_type": "SCHEDULED" if when_d else "NOW",
            "schedule_date": format_us_date(when_d) if when_d else "",
        }
        logger.info(
            "Transferring %s from %s to %s (%s)",
            context["amount"],
            from_account,
            to_account,
            context["schedule_date"] or "now",
        )

        response = None
        for step in self.variant.transfer_steps:
            response = self._send(step, context, failure=_TRANSFER_FAILURES.get(step.stage, TransferStageFailed))

        body = response.text if response is not None else ""
        confirmation = scraper.extract_single_value(body, self.variant.confirmation_pattern)
        if not confirmation:
            self._save_page("transfer_no_confirmation", body)
            raise TransferConfirmationFailed("Transfer confirmation number not found. Check your account!")
        logger.info("Transfer confirmed (confirmation=%s)", confirmation)
        return confirmation

    # ---------------------------------------------------------------- helpers

    def _history_window(self, start: Union[date, str, None], end: Union[date, str, None]) -> tuple[date, date]:
        end_d = self._as_date(end) or self.variant.history_end or date.today()
        start_d = self._as_date(start) or self.variant.history_start
        if start_d is None:
            start_d = end_d - relativedelta(months=self.variant.history_months)
        return start_d, end_d

    @staticmethod
    def _as_date(value: Union[date, str, None]) -> Optional[date]:
        if value is None or value == "":
            return None
        if isinstance(value, date):
            return value
        return parse_us_date(value)

    def _url(self, step: Step) -> str:
        return f"{self.base_url}/{step.path.lstrip('/')}"

    def _run(
        self,
        steps: tuple[Step, ...],
        context: Mapping[str, str],
        *,
        failure: type[ShareBuilderError],
    ) -> requests.Response:
        response = None
        for step in steps:
            response = self._send(step, context, failure=failure)
        if response is None:
            raise UnsupportedOperation(f"{self.variant.display_name} defines no steps for this operation")
        return response

    def _build_form(self, step: Step, context: Mapping[str, str]) -> list[tuple[str, str]]:
        form: list[tuple[str, str]] = []
        for name, template in step.fields:
            value = template.format_map(context)
            if not value and name in step.optional_fields:
                continue
            form.append((name, value))

        if step.send_tokens:
            if step.required_tokens:
                self.tokens.require(*step.required_tokens, step=step.name)
            names = step.token_names or None
            form.extend(sorted(self.tokens.snapshot_for_request(names).items()))
        return form

    def _send(
        self,
        step: Step,
        context: Mapping[str, str],
        *,
        failure: type[ShareBuilderError],
    ) -> requests.Response:
        url = self._url(step)
        self._step_counter += 1
        logger.info("Step %02d %s %s (url=%s)", self._step_counter, step.method, step.name, url)

        if step.set_referer:
            self.http.headers["Referer"] = url

        kwargs: dict[str, Any] = {"timeout": self.timeout_seconds}
        if step.expect == "redirect":
            kwargs["allow_redirects"] = False

        t0 = time.time()
        try:
            if step.method == "POST":
                response = self.http.post(url, data=self._build_form(step, context), **kwargs)
            else:
                response = self.http.get(url, **kwargs)
        except requests.RequestException as e:
            raise failure(f"{step.name}: request failed: {e}") from e

        logger.debug(
            "Step %02d %s -> HTTP %s (seconds=%.2f)",
            self._step_counter,
            step.name,
            response.status_code,
            time.time() - t0,
        )
        self._capture(step, response)

        # Tokens rotate on every round-trip, including failed ones; keep the store current.
        self.tokens = self.tokens.merge(scraper.extract_tokens(response.text or "", self.variant.token_fields))

        if step.expect == "redirect":
            if not response.is_redirect:
                self._save_page(f"{step.name}_failed", response.text or "")
                raise failure(f"{step.name}: expected a redirect, got HTTP {response.status_code}")
        elif not response.ok:
            self._save_page(f"{step.name}_failed", response.text or "")
            raise failure(f"{step.name}: HTTP {response.status_code}")
        return response

    def _capture(self, step: Step, response: requests.Response) -> None:
        if self._capture_pages:
            self._save_page(f"step_{self._step_counter:02d}_{step.name}", response.text or "")

    def _save_page(self, name: str, body: str) -> None:
        if self._debug_dir is None:
            return
        try:
            self._debug_dir.mkdir(parents=True, exist_ok=True)
            path = self._debug_dir / f"{_SAFE_NAME_RE.sub('_', name)}.html"
            path.write_text(body, encoding="utf-8")
            logger.debug("Saved page: %s", path)
        except OSError:
            logger.debug("Failed to save debug page (name=%s).", name, exc_info=True)
