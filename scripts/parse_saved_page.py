#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def _emit(payload: dict, out: str) -> None:
    out_json = json.dumps(payload, indent=2, sort_keys=False)
    if out:
        Path(out).write_text(out_json, encoding="utf-8")
    else:
        print(out_json)


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from sharebuilder_sync.ofx import normalize, parse_ofx
    from sharebuilder_sync.portal import scraper
    from sharebuilder_sync.portal.variants import KNOWN_VARIANTS, get_variant

    p = argparse.ArgumentParser(
        prog="parse_saved_page",
        description=(
            "Parse pages saved under data/debug/ (DEBUG_CAPTURE_PAGES=true) into structured JSON.\n"
            "This is intended for debugging markup changes offline (no network, no secrets)."
        ),
    )
    p.add_argument("--variant", default="sharebuilder", choices=sorted(KNOWN_VARIANTS))
    sub = p.add_subparsers(dest="cmd", required=True)

    accounts = sub.add_parser("accounts", help="Decode the account listing of a saved overview page")
    accounts.add_argument("--file", required=True, help="Path to a saved account/overview.aspx page")
    accounts.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    positions = sub.add_parser("positions", help="Decode the positions table of a saved positions page")
    positions.add_argument("--file", required=True, help="Path to a saved positions.aspx page")
    positions.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    ofx = sub.add_parser("ofx", help="Normalize a saved OFX export into transaction records")
    ofx.add_argument("--file", required=True, help="Path to a saved OFX/QFX export")
    ofx.add_argument("--strict", action="store_true", help="Fail on securities missing from the security list")
    ofx.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    tokens = sub.add_parser("tokens", help="List the hidden state tokens a saved page would contribute")
    tokens.add_argument("--file", required=True, help="Path to any saved page")
    tokens.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    args = p.parse_args(argv)
    variant = get_variant(args.variant)
    body = _read_text(args.file)

    if args.cmd == "accounts":
        rows = scraper.extract_accounts(body, variant.account_rows)
        _emit({"accounts": [a.model_dump(mode="json") for a in rows]}, args.out)
        return 0

    if args.cmd == "positions":
        rows = scraper.extract_positions(body)
        _emit({"positions": [r.model_dump(mode="json") for r in rows]}, args.out)
        return 0

    if args.cmd == "ofx":
        records = normalize(parse_ofx(body), strict=args.strict)
        _emit({"transactions": [r.model_dump(mode="json") for r in records]}, args.out)
        return 0

    if args.cmd == "tokens":
        # Values are view-state blobs; only their presence and size matter when debugging.
        found = scraper.extract_tokens(body, variant.token_fields)
        _emit({"tokens": {name: len(value) for name, value in found.items()}}, args.out)
        return 0

    raise AssertionError("Unhandled command")


if __name__ == "__main__":
    raise SystemExit(main())
