from __future__ import annotations

import time
import zipfile
from pathlib import Path
from typing import Optional

from ..models import RunSummary


# Never bundle these even if they end up inside the debug dir.
_SECRET_SUFFIXES = (".db", ".db-wal", ".db-shm", ".bak", ".env", ".yaml", ".yml")


def has_debug_artifacts(debug_dir: str) -> bool:
    dbg = Path(debug_dir)
    return dbg.is_dir() and any(p.is_file() for p in dbg.rglob("*"))


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    summary: Optional[RunSummary] = None,
) -> Path:
    """
    Zip login screenshots/HTML + the log file (+ the run summary) for sharing after a failed run.

    Credentials, the token DB and config files are excluded.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    run_part = f"_run{summary.run_id}" if summary is not None and summary.run_id is not None else ""
    out_path = out_root / f"debug_bundle{run_part}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file) if log_file else None

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        if log is not None and log.is_file():
            z.write(log, arcname=log.name)

        if dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if not p.is_file() or p.name.endswith(_SECRET_SUFFIXES):
                    continue
                z.write(p, arcname=str(Path("debug") / p.relative_to(dbg)))

        if summary is not None:
            z.writestr("run_summary.json", summary.model_dump_json(indent=2))

    return out_path
