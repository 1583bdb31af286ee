from __future__ import annotations

import argparse
import logging
import os
import time
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterable, List, Optional

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .errors import ShareBuilderError
from .logging_config import configure_logging
from .models import AccountRecord, PositionRecord, TransactionRecord
from .ofx import normalize, parse_ofx
from .portal.client import DEFAULT_USER_AGENT, PortalCredentials, ShareBuilderClient
from .portal.variants import KNOWN_VARIANTS, get_variant
from .util.dates import parse_us_date
from .util.debug_bundle import create_debug_bundle
from .util.money import format_usd


logger = logging.getLogger("sharebuilder_sync")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sharebuilder_sync")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    accounts = sub.add_parser("accounts", help="Log in and list accounts with balances")
    accounts.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    positions = sub.add_parser("positions", help="Log in and print the positions held in one account")
    positions.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    positions.add_argument("account", help="Account number")

    txns = sub.add_parser("transactions", help="Log in and export buy/sell/reinvest transactions (OFX)")
    txns.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    txns.add_argument("account", help="Account number (legacy variant: ALL exports every account)")
    txns.add_argument("--start", default="", help="First day of the window (MM/DD/YYYY or YYYY-MM-DD)")
    txns.add_argument("--end", default="", help="Last day of the window (default: today)")
    txns.add_argument(
        "--days",
        type=int,
        default=0,
        help="Export the last N days instead of --start/--end.",
    )
    txns.add_argument("--ofx", action="store_true", help="Print the raw OFX document instead of a table")
    txns.add_argument(
        "--strict",
        action="store_true",
        help="Fail when a transaction references a security missing from the OFX security list.",
    )

    transfer = sub.add_parser(
        "transfer",
        help="Move money between two accounts (legacy variant only). Cannot be undone once validated.",
    )
    transfer.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    transfer.add_argument("from_account", help="Source account number")
    transfer.add_argument("to_account", help="Destination account number")
    transfer.add_argument("amount", help="Amount in dollars, e.g. 125.00")
    transfer.add_argument("--when", default="", help="Schedule for this date instead of transferring now")
    transfer.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    sub.add_parser("list-variants", help="List the supported site variants")

    return p


def _client_from_config(cfg: AppConfig) -> ShareBuilderClient:
    site = cfg.site
    return ShareBuilderClient(
        creds=PortalCredentials(
            username=site.username,
            password=site.password,
            image=site.image,
            phrase=site.phrase,
        ),
        variant=get_variant(site.variant),
        base_url=site.base_url,
        timeout_seconds=site.timeout_seconds,
        user_agent=site.user_agent or DEFAULT_USER_AGENT,
        debug_dir=cfg.debug.dir,
        capture_pages=cfg.debug.capture_pages,
    )


def _print_accounts(accounts: Iterable[AccountRecord]) -> None:
    for a in accounts:
        line = f"{a.number:<12} {a.type:<10} {a.nickname:<30} {format_usd(a.balance):>14}"
        if a.available is not None:
            line += f"  (available {format_usd(a.available)})"
        print(line)


def _fmt_qty(value: Optional[Decimal]) -> str:
    return f"{value:9.4f}" if value is not None else " " * 9


def _print_positions(positions: Iterable[PositionRecord]) -> None:
    for p in positions:
        pct = f"{p.change_pct}%" if p.change_pct is not None else ""
        print(
            f"{p.symbol:<8}  {_fmt_qty(p.quantity)} * {format_usd(p.quote):>7} = {format_usd(p.value):>9} ; "
            f"{'down' if p.is_down else 'up':<4} {format_usd(p.change):>9} ({pct:>7}) from {format_usd(p.basis):>9}"
        )


def _print_transactions(txns: Iterable[TransactionRecord]) -> None:
    for t in sorted(txns, key=lambda t: t.trade_date, reverse=True):
        print(
            f"{t.trade_date.isoformat():>10} {t.type:<8} {t.symbol:<6} {format_usd(t.total):>10} - "
            f"{format_usd(t.commission):>6} = {_fmt_qty(t.quantity)} * {format_usd(t.cost_per_share):>9}"
        )


def _parse_transfer_amount(raw: str) -> Decimal:
    try:
        amount = Decimal((raw or "").replace("$", "").replace(",", "").strip())
    except InvalidOperation:
        raise SystemExit(f"Invalid amount: {raw!r}") from None
    if amount <= 0:
        raise SystemExit("Transfer amount must be positive.")
    return amount.quantize(Decimal("0.01"))


def _parse_date_arg(raw: str, flag: str) -> Optional[date]:
    if not (raw or "").strip():
        return None
    try:
        return parse_us_date(raw)
    except (ValueError, OverflowError):
        raise SystemExit(f"Invalid {flag} date: {raw!r} (use MM/DD/YYYY or YYYY-MM-DD)") from None


def _confirm(prompt: str) -> bool:
    resp = input(prompt).strip().lower()
    return resp in {"y", "yes"}


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "list-variants":
        # Print only; no config/env required.
        for name in sorted(KNOWN_VARIANTS):
            v = KNOWN_VARIANTS[name]
            extra = "\ttransfer" if v.supports_transfer else ""
            print(f"{v.name}\t{v.display_name}{extra}")
        return 0

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    # Validate every date before logging in; a typo should not cost a login round-trip.
    start = _parse_date_arg(getattr(args, "start", ""), "--start")
    end = _parse_date_arg(getattr(args, "end", ""), "--end")
    when = _parse_date_arg(getattr(args, "when", ""), "--when")

    if args.cmd == "transfer":
        amount = _parse_transfer_amount(args.amount)
        if not args.yes and not _confirm(
            f"Transfer {format_usd(amount)} from {args.from_account} to {args.to_account}"
            f" ({when or 'now'})? [y/N] "
        ):
            print("Aborted.")
            return 1

    t0 = time.time()
    logger.info("Starting %s (variant=%s)", args.cmd, cfg.site.variant)
    try:
        with _client_from_config(cfg) as client:
            client.login()

            if args.cmd == "accounts":
                _print_accounts(client.accounts().values())

            elif args.cmd == "positions":
                _print_positions(client.positions(args.account))

            elif args.cmd == "transactions":
                if args.days:
                    ofx = client.recent_transactions(args.account, days=args.days)
                    if args.ofx:
                        print(ofx)
                    else:
                        _print_transactions(normalize(parse_ofx(ofx), strict=args.strict))
                elif args.ofx:
                    print(client.transactions(args.account, start, end))
                else:
                    _print_transactions(client.transaction_list(args.account, start, end, strict=args.strict))

            elif args.cmd == "transfer":
                confirmation = client.transfer(args.from_account, args.to_account, amount, when)
                print(f"Transfer confirmed: {confirmation}")

        logger.info("Finished %s (seconds=%.2f)", args.cmd, time.time() - t0)
        return 0
    except ShareBuilderError as e:
        logger.error("%s failed: %s", args.cmd, e)
        _write_debug_bundle(cfg)
        return 1
    except Exception:
        _write_debug_bundle(cfg)
        raise


def _write_debug_bundle(cfg: AppConfig) -> None:
    # Auto-bundle debug artifacts + log for easy sharing.
    try:
        bundle = create_debug_bundle(
            debug_dir=cfg.debug.dir,
            log_file=cfg.logging.file_path,
            out_dir="data",
            variant=cfg.site.variant,
        )
        logger.error("Wrote debug bundle: %s", bundle)
    except Exception:
        logger.debug("Failed to create debug bundle.", exc_info=True)
