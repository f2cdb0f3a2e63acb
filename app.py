#!/usr/bin/env python3
"""
Orylis Quotes — Application Entry Point
Creates Flask app and registers the quote Blueprint.
"""

import os
import logging
from flask import Flask

from logging_config import setup_logging


def create_app(store=None):
    """Application factory.

    `store` replaces the process-wide artifact store (tests, alternative backends).
    """
    setup_logging()
    log = logging.getLogger("quotes")

    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY") or os.urandom(32).hex()
    app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024

    # ── Paths ─────────────────────────────────────────────────────────────────
    from src.core.paths import validate_paths
    paths = validate_paths()
    for err in paths["errors"]:
        log.error("PATH: %s", err)
    for warn in paths["warnings"]:
        log.warning("PATH: %s", warn)

    # ── Persistent database init ──────────────────────────────────────────────
    from src.core.db import startup as db_startup
    result = db_startup()
    log.info("DB: %s | quotes=%d projects=%d",
             result["db_path"],
             result["stats"].get("quotes", 0),
             result["stats"].get("projects", 0))

    # ── Config report ─────────────────────────────────────────────────────────
    from src.core.secrets import startup_check
    startup_check()
    if not os.environ.get("SECRET_KEY"):
        log.warning("SECRET_KEY not set: sessions will not survive a restart")

    from src.core.storage import get_store, set_store
    if store is not None:
        set_store(store)
    log.info("Artifact store: %s", get_store().provider)

    from src.api.routes_quotes import bp
    app.register_blueprint(bp)

    # ── Security middleware (headers) ─────────────────────────────────────────
    from src.core.security import init_security
    init_security(app)

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port, debug=False)
