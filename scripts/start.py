#!/usr/bin/env python3
"""
Container entry point: release phase, then gunicorn serving app.wsgi:app.

Environment:
    PORT              listen port (default 8080)
    WEB_CONCURRENCY   gunicorn worker processes (default 2)
    GUNICORN_THREADS  threads per worker (default 4)
    SKIP_RELEASE=1    start without migrating/seeding
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, lo: int = 1, hi: int = 65535) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = lo - 1
    if not lo <= value <= hi:
        print(f"ERROR: {name}={raw!r} must be an integer in [{lo}, {hi}].", flush=True)
        sys.exit(1)
    return value


def main() -> None:
    port = _int_env("PORT", 8080)
    workers = _int_env("WEB_CONCURRENCY", 2, hi=64)
    threads = _int_env("GUNICORN_THREADS", 4, hi=64)

    if (os.environ.get("SKIP_RELEASE") or "").strip() not in ("1", "true", "yes"):
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"Starting gunicorn on 0.0.0.0:{port} ({workers} workers x {threads} threads)", flush=True)
    # exec so gunicorn becomes PID 1 and receives signals directly
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--workers", str(workers),
            "--worker-class", "gthread",
            "--threads", str(threads),
            "--timeout", "60",
            "--preload",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
