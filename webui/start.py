"""
CineFlow Studio API launcher.

Usage:
  python webui/start.py             # Serve the API on :8000
  python webui/start.py --dev       # Same, with auto-reload
"""
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).parent.parent
BACKEND_PORT = 8000


def main() -> None:
    dev = "--dev" in sys.argv

    print("=" * 60)
    print("  CineFlow Studio API")
    print("=" * 60)

    print(f"\n► Starting backend on http://localhost:{BACKEND_PORT} …")
    backend_cmd = [
        sys.executable, "-m", "uvicorn",
        "webui.backend.app:app",
        "--port", str(BACKEND_PORT),
        "--host", "0.0.0.0",
    ]
    if dev:
        backend_cmd.append("--reload")

    backend = subprocess.Popen(backend_cmd, cwd=str(REPO_ROOT))
    print(f"\n✅ API docs at http://localhost:{BACKEND_PORT}/schema")

    try:
        backend.wait()
    except KeyboardInterrupt:
        print("\n⛔ Shutting down…")
    finally:
        backend.terminate()


if __name__ == "__main__":
    main()
