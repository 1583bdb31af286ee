from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Literal, Mapping, Optional


# ASP.NET naming-container prefixes used all over the current markup.
_UC = "ctl00$ctl00$MainContent$MainContent$uc"
_VIEWS = "ctl00$ctl00$MainContent$MainContent$ucView$c$views$c$"
_QUICK_LINKS = "ctl00$ctl00$MainContent$MainContent$ucView$c$acctQuickLinks$"


@dataclass(frozen=True)
class RowField:
    """
    One position within an account row run.

    source:
    - "marker": value comes from the `kind` group of the element id (mapped through RowSchema.kinds)
    - "text": stripped element text
    - "amount": element text parsed as a currency amount
    A field without a name is a placeholder and is skipped.
    """

    name: Optional[str]
    source: Literal["marker", "text", "amount"] = "text"


@dataclass(frozen=True)
class RowSchema:
    marker: re.Pattern[str]
    fields: tuple[RowField, ...]
    kinds: Mapping[str, str]

    @property
    def stride(self) -> int:
        return len(self.fields)


@dataclass(frozen=True)
class Step:
    """
    One request in an ordered sequence.

    `fields` values are templates rendered with the operation context (`str.format_map`).
    Fields listed in `optional_fields` are dropped when they render empty.
    """

    name: str
    method: Literal["GET", "POST"] = "GET"
    path: str = ""
    fields: tuple[tuple[str, str], ...] = ()
    optional_fields: tuple[str, ...] = ()
    send_tokens: bool = False
    # Restrict which stored tokens are sent (empty = all non-empty tokens).
    token_names: tuple[str, ...] = ()
    required_tokens: tuple[str, ...] = ()
    set_referer: bool = False
    expect: Literal["ok", "redirect"] = "ok"
    verify_challenge: bool = False
    # Session state entered once this step succeeds (login sequence only).
    enters: Optional[str] = None
    stage: str = ""


@dataclass(frozen=True)
class SiteVariant:
    """
    One generation of the site's markup.

    The site changes field names without notice; keep every field name, path and step sequence here
    so the driver itself stays variant-agnostic.
    """

    name: str
    display_name: str
    base_url: str

    token_fields: tuple[str, ...]
    account_rows: RowSchema

    login_steps: tuple[Step, ...]
    positions_steps: tuple[Step, ...]
    transactions_steps: tuple[Step, ...]
    transfer_steps: tuple[Step, ...] = ()

    challenge_image_pattern: str = r"<img[^\n]*?SelectedSecurityImage[^\n]*?ii={image}"
    export_failure_marker: str = "Unable to process transaction"
    confirmation_pattern: str = r'<span[^>]*id="confirmationNumber"[^>]*>\s*(\d+)\s*<'

    # Transaction export window defaults: explicit dates win over a relative window.
    default_account: Optional[str] = None
    history_months: int = 6
    history_start: Optional[date] = None
    history_end: Optional[date] = None

    @property
    def supports_transfer(self) -> bool:
        return bool(self.transfer_steps)


_ACCOUNT_ROW_FIELDS = (
    RowField("type", "marker"),
    RowField("nickname"),
    RowField("number"),
    RowField(None),
    RowField("balance", "amount"),
)

SHAREBUILDER = SiteVariant(
    name="sharebuilder",
    display_name="ShareBuilder",
    base_url="https://www.sharebuilder.com/sharebuilder",
    token_fields=("__VIEWSTATE", "__EVENTVALIDATION", "__RequestVerificationToken"),
    account_rows=RowSchema(
        marker=re.compile(
            r"ctl00_ctl00_MainContent_MainContent_ucView_c_acctList(?P<kind>Invest|Retire)"
            r"_acctListRepeater_ctl\d+_(?:t\d+|lnkFillBalanceFlyout)"
        ),
        fields=_ACCOUNT_ROW_FIELDS,
        kinds={"Invest": "investment", "Retire": "retirement"},
    ),
    login_steps=(
        Step(name="login_page", path="authentication/signin.aspx"),
        Step(
            name="username",
            method="POST",
            path="authentication/signin.aspx",
            fields=(
                (_VIEWS + "ucUsername$ctl01$txtUsername", "{username}"),
                (_VIEWS + "ucUsername$ctl01$btnSignIn", _VIEWS + "ucUsername$ctl01$btnSignIn"),
            ),
            send_tokens=True,
            set_referer=True,
            enters="awaiting_challenge_ack",
        ),
        Step(
            name="challenge",
            method="POST",
            path="authentication/signin.aspx",
            fields=(("__EVENTTARGET", _VIEWS + "nextViewPostBack"),),
            send_tokens=True,
            set_referer=True,
            verify_challenge=True,
            enters="awaiting_password",
        ),
        Step(
            name="password",
            method="POST",
            path="authentication/signin.aspx",
            fields=(
                (_VIEWS + "ctl08$txtPassword", "{password}"),
                (_VIEWS + "btnNext", _UC),
            ),
            send_tokens=True,
        ),
        Step(name="landing", path="account/overview.aspx", enters="authenticated"),
    ),
    positions_steps=(
        Step(name="overview", path="account/overview.aspx"),
        Step(
            name="select_positions",
            method="POST",
            path="account/overview.aspx",
            fields=(
                ("__EVENTTARGET", _QUICK_LINKS + "btnPositions"),
                (_QUICK_LINKS + "hidAccountNumber", "{account}"),
            ),
            send_tokens=True,
            set_referer=True,
        ),
        Step(name="positions", path="account/portfolio/positions.aspx"),
    ),
    transactions_steps=(
        Step(name="history", path="Account/Records/History.aspx"),
        Step(
            name="history_view",
            method="POST",
            path="Account/Records/History.aspx",
            fields=(
                (_VIEWS + "ddlAccount", "{account}"),
                (_VIEWS + "txtDateRange", "{start} to {end}"),
                (_VIEWS + "ddlShow", "ALL"),
                (_VIEWS + "btnView", _UC),
            ),
            send_tokens=True,
            set_referer=True,
        ),
        Step(
            name="history_download",
            method="POST",
            path="Account/Records/History.aspx",
            fields=(
                (_VIEWS + "ddlAccount", "{account}"),
                (_VIEWS + "txtDateRange", "{start} to {end}"),
                (_VIEWS + "ddlShow", "ALL"),
                (_VIEWS + "ddlFinancialSoftware", "OFX"),
                (_VIEWS + "btnDownload", _VIEWS + "btnDownload"),
            ),
            send_tokens=True,
        ),
    ),
)


SHAREBUILDER_LEGACY = SiteVariant(
    name="sharebuilder_legacy",
    display_name="ShareBuilder (ING-era markup)",
    base_url=SHAREBUILDER.base_url,
    token_fields=SHAREBUILDER.token_fields + ("pageToken",),
    account_rows=RowSchema(
        marker=re.compile(
            r"ctl00_ctl00_MainContent_MainContent_ucView_c_acctList(?P<kind>Invest|Retire|Savings)"
            r"_acctListRepeater_ctl\d+_(?:t\d+|lnkFillBalanceFlyout)"
        ),
        fields=(
            RowField("type", "marker"),
            RowField("nickname"),
            RowField("number"),
            RowField("available", "amount"),
            RowField("balance", "amount"),
        ),
        kinds={"Invest": "investment", "Retire": "retirement", "Savings": "savings"},
    ),
    login_steps=SHAREBUILDER.login_steps,
    positions_steps=SHAREBUILDER.positions_steps,
    transactions_steps=(
        Step(
            name="download_qfx",
            method="POST",
            path="download.qfx",
            fields=(
                ("type", "OFX"),
                ("TIMEFRAME", "VARIABLE"),
                ("account", "{account}"),
                ("startDate", "{start}"),
                ("endDate", "{end}"),
            ),
        ),
    ),
    transfer_steps=(
        Step(name="transfer_page", path="INGDirect/money_transfer.vm", stage="setup"),
        Step(
            name="transfer_input",
            method="POST",
            path="INGDirect/deposit_transfer_input.vm",
            fields=(
                ("action", "continue"),
                ("amount", "{amount}"),
                ("sourceAccountNumber", "{from_account}"),
                ("destinationAccountNumber", "{to_account}"),
                ("depositTransferType", "{transfer_type}"),
                ("scheduleDate", "{schedule_date}"),
            ),
            optional_fields=("scheduleDate",),
            send_tokens=True,
            token_names=("pageToken",),
            required_tokens=("pageToken",),
            expect="redirect",
            stage="setup",
        ),
        Step(name="transfer_validate_page", path="INGDirect/deposit_transfer_validate.vm", stage="validate"),
        Step(
            name="transfer_validate",
            method="POST",
            path="INGDirect/deposit_transfer_validate.vm",
            fields=(("action", "submit"),),
            send_tokens=True,
            token_names=("pageToken",),
            required_tokens=("pageToken",),
            expect="redirect",
            stage="validate",
        ),
        Step(name="transfer_confirmation", path="INGDirect/deposit_transfer_confirmation.vm", stage="confirm"),
    ),
    default_account="ALL",
    history_start=date(2000, 1, 1),
    history_end=date(2038, 1, 1),
)


KNOWN_VARIANTS: Mapping[str, SiteVariant] = {
    SHAREBUILDER.name: SHAREBUILDER,
    SHAREBUILDER_LEGACY.name: SHAREBUILDER_LEGACY,
}


def get_variant(name: str) -> SiteVariant:
    key = (name or "").strip().lower()
    try:
        return KNOWN_VARIANTS[key]
    except KeyError:
        known = ", ".join(sorted(KNOWN_VARIANTS))
        raise ValueError(f"Unknown site variant {name!r} (known: {known})") from None


def is_known_variant(name: str) -> bool:
    return (name or "").strip().lower() in KNOWN_VARIANTS
