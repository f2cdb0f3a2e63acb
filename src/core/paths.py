"""
src/core/paths.py — Where the quote service keeps its files

  DATA_DIR        quotes.db, logs/, artifacts/ (local artifact store)
  ASSETS_DIR      bundled static files (logo-orylis.png)
  PUBLIC_DIR      files the web front also serves (logo fallback)

DATA_DIR resolution: QUOTES_DATA_DIR → mounted volume → ./data.
Everything that writes to disk imports its directory from here.
"""

import os
import logging

log = logging.getLogger("quotes.paths")

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
DEFAULT_DATA_DIR = os.path.join(PROJECT_ROOT, "data")


def _resolve_data_dir() -> tuple:
    """(directory, source) of the writable data directory."""
    override = os.environ.get("QUOTES_DATA_DIR", "")
    if override and os.path.isdir(override):
        return override, "QUOTES_DATA_DIR"

    volume = os.environ.get("RAILWAY_VOLUME_MOUNT_PATH", "")
    if volume and os.path.isdir(volume):
        if os.path.basename(volume.rstrip("/")) == "data":
            return volume, "volume"
        return os.path.join(volume, "data"), "volume"

    return DEFAULT_DATA_DIR, "local"


DATA_DIR, DATA_DIR_SOURCE = _resolve_data_dir()
ARTIFACTS_DIR = os.path.join(DATA_DIR, "artifacts")
LOG_DIR = os.path.join(DATA_DIR, "logs")
ASSETS_DIR = os.path.join(PROJECT_ROOT, "assets")
PUBLIC_DIR = os.path.join(PROJECT_ROOT, "public")

os.makedirs(ARTIFACTS_DIR, exist_ok=True)


def validate_paths() -> dict:
    """Startup check of the directories above.

    Returns {"ok", "errors", "warnings", "resolved"}. A missing or read-only
    DATA_DIR is an error; missing logo folders only cost the local logo.
    """
    report = {"ok": True, "errors": [], "warnings": [],
              "resolved": {"DATA_DIR": DATA_DIR, "DATA_DIR_SOURCE": DATA_DIR_SOURCE,
                           "ARTIFACTS_DIR": ARTIFACTS_DIR}}

    for name in ("DATA_DIR", "ARTIFACTS_DIR"):
        if not os.path.isdir(report["resolved"][name]):
            report["errors"].append(f"{name} missing: {report['resolved'][name]}")

    marker = os.path.join(DATA_DIR, ".write_check")
    try:
        with open(marker, "w") as f:
            f.write("ok")
        os.remove(marker)
    except OSError as e:
        report["errors"].append(f"DATA_DIR not writable: {e}")

    if not any(os.path.isdir(d) for d in (ASSETS_DIR, PUBLIC_DIR)):
        report["warnings"].append("No assets/ or public/ folder: quote header uses the remote logo")

    if DATA_DIR_SOURCE == "local" and os.environ.get("RAILWAY_ENVIRONMENT"):
        report["warnings"].append(
            "No persistent volume: quotes.db and locally stored PDFs are lost on redeploy")

    report["ok"] = not report["errors"]
    return report
