"""Flask application factory."""

from __future__ import annotations

import os
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from flask import Flask

from samlsp.core.saml.sp import ServiceProvider
from samlsp.storage.replay import ReplayCache
from samlsp.storage.sessions import SessionStore
from samlsp.storage.sweeper import StoreSweeper

if TYPE_CHECKING:
    from samlsp.core.clock import Clock
    from samlsp.core.config import AppConfig


def create_app(
    app_config: AppConfig | None = None,
    config: dict[str, Any] | None = None,
    clock: Clock | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        config: Optional Flask configuration overrides (e.g. TESTING,
            SWEEPER_ENABLED).
        clock: Time source for the stores and validators.

    Returns:
        Configured Flask application instance.

    Raises:
        ConfigurationError: If the SAML settings are incomplete.
        InvalidCertificate: If the IdP certificate cannot be loaded.
    """
    from samlsp.core.clock import utc_now
    from samlsp.core.config import load_config

    if app_config is None:
        app_config = load_config()

    app = Flask(__name__)

    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SAMLSP_SECRET_KEY") or secrets.token_hex(32),
        SWEEPER_ENABLED=True,
    )

    if config:
        app.config.from_mapping(config)

    settings = app_config.saml
    clock = clock or utc_now

    # One set of stores per application, shared by every request thread
    sessions = SessionStore(ttl=timedelta(minutes=settings.session_ttl_minutes), clock=clock)
    replay_cache = ReplayCache(window=timedelta(minutes=settings.replay_window_minutes), clock=clock)
    sp = ServiceProvider.from_settings(
        settings, sessions=sessions, replay_cache=replay_cache, clock=clock
    )
    sweeper = StoreSweeper(sessions, replay_cache, interval=settings.sweep_interval_seconds)

    app.extensions["samlsp"] = sp
    app.extensions["samlsp_sweeper"] = sweeper

    from samlsp.web import routes
    from samlsp.web.security import init_security_headers

    routes.init_app(app)
    init_security_headers(app)

    if app.config["SWEEPER_ENABLED"]:
        sweeper.start()

    return app


def run_server(
    app_config: AppConfig | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Run the Flask development server.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        host: Override host from config.
        port: Override port from config.
    """
    from samlsp.core.config import load_config
    from samlsp.core.logging import configure_logging

    if app_config is None:
        app_config = load_config()

    configure_logging(
        level=app_config.logging.level,
        trace_enabled=app_config.logging.trace_enabled,
        log_file=app_config.logging.log_file,
    )

    server_host = host or app_config.server.host
    server_port = port or app_config.server.port

    app = create_app(app_config)
    app.debug = app_config.server.debug

    print("Starting samlsp server...")
    print(f"  URL: http://{server_host}:{server_port}")
    print(f"  SP entity ID: {app_config.saml.entity_id}")
    print("")

    try:
        app.run(host=server_host, port=server_port, threaded=True, use_reloader=False)
    finally:
        app.extensions["samlsp_sweeper"].stop()
