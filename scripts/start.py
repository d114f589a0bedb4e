#!/usr/bin/env python3
"""
Container entrypoint.

Runs the release phase (migrate, verify schema, seed), then optionally sweeps
every lineage for chain/artifact integrity, then execs gunicorn so it becomes
PID 1.

CHECK_INTEGRITY_ON_START:
    unset / "0"  skip the sweep
    "1"          sweep and serve anyway (violations are logged at ERROR)
    "strict"     sweep and refuse to start on any violation

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port() -> str:
    port = (os.environ.get("PORT") or "").strip() or "8080"
    if not port.isdigit() or not 1 <= int(port) <= 65535:
        print(f"ERROR: Invalid PORT value '{port}'. Must be integer 1-65535.", flush=True)
        sys.exit(1)
    return port


def gunicorn_argv(port: str, workers: str) -> list[str]:
    # --preload imports the app once; each worker disposes the inherited engine after fork.
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", "60",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def _integrity_sweep(mode: str) -> None:
    from scripts.check_integrity import run_check

    failures = run_check(os.environ["DATABASE_URL"])
    if not failures:
        print("Integrity sweep clean.", flush=True)
        return
    print(f"WARNING: {len(failures)} lineage(s) failed the integrity sweep.", flush=True)
    if mode == "strict":
        sys.exit(1)


def main() -> None:
    port = _port()
    workers = (os.environ.get("WEB_CONCURRENCY") or "2").strip()

    print("=== Running release phase ===", flush=True)
    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    mode = (os.environ.get("CHECK_INTEGRITY_ON_START") or "").strip().lower()
    if mode in ("1", "strict"):
        _integrity_sweep(mode)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} ({workers} workers) ===", flush=True)
    os.execvp("gunicorn", gunicorn_argv(port, workers))


if __name__ == "__main__":
    main()
