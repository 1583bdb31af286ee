from __future__ import annotations

import zipfile
from pathlib import Path

from sharebuilder_sync.util.debug_bundle import create_debug_bundle


def test_create_debug_bundle_includes_pages_and_log(tmp_path: Path) -> None:
    debug_dir = tmp_path / "debug"
    debug_dir.mkdir()
    (debug_dir / "step_01_login_page.html").write_text("<html/>", encoding="utf-8")
    (debug_dir / "challenge_unverified.html").write_text("<html/>", encoding="utf-8")
    (debug_dir / "old_bundle.zip").write_bytes(b"zip")

    log_file = tmp_path / "sharebuilder.log"
    log_file.write_text("hello", encoding="utf-8")

    out = create_debug_bundle(
        debug_dir=str(debug_dir),
        log_file=str(log_file),
        out_dir=str(tmp_path),
        variant="sharebuilder_legacy",
    )
    assert out.exists()
    assert out.suffix == ".zip"
    assert out.name.startswith("debug_bundle_sharebuilder_legacy_")

    with zipfile.ZipFile(out, "r") as z:
        names = set(z.namelist())
        assert "sharebuilder.log" in names
        assert "pages/step_01_login_page.html" in names
        assert "pages/challenge_unverified.html" in names
        assert "pages/old_bundle.zip" not in names


def test_create_debug_bundle_tolerates_missing_inputs(tmp_path: Path) -> None:
    out = create_debug_bundle(
        debug_dir=str(tmp_path / "nope"),
        log_file=str(tmp_path / "missing.log"),
        out_dir=str(tmp_path / "out"),
    )
    assert out.exists()
    with zipfile.ZipFile(out, "r") as z:
        assert z.namelist() == []
