from __future__ import annotations

import time
import zipfile
from pathlib import Path


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    variant: str = "",
) -> Path:
    """
    Zip the captured HTML/OFX pages and the log file so a markup change can be diagnosed offline.

    Excludes .env and config.yaml. Captured pages may still contain account numbers and balances.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    name = (variant or "").strip().lower()
    name_part = f"_{name}" if name else ""
    out_path = out_root / f"debug_bundle{name_part}_{stamp}.zip"

    pages = Path(debug_dir)
    log = Path(log_file) if log_file else None

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if log is not None and log.is_file():
            z.write(log, arcname=log.name)

        if pages.is_dir():
            for p in sorted(pages.rglob("*")):
                # A bundle written into the debug dir itself must not swallow older bundles.
                if not p.is_file() or p.suffix == ".zip":
                    continue
                z.write(p, arcname=str(Path("pages") / p.relative_to(pages)))

    return out_path
