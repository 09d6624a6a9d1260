import logging
import os
from typing import Any

from flask import Flask, jsonify
from sqlalchemy import event
from sqlalchemy.pool import StaticPool

from .config import ENV_DIAGNOSTICS
from .extensions import db, migrate, wants_write_lock
from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app(config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)
    os.makedirs(app.instance_path, exist_ok=True)

    _load_base_config(app, config)
    _apply_sqlalchemy_env_overrides(app)
    _configure_sqlite_engine_options(app)

    db.init_app(app)
    migrate.init_app(app, db)
    from . import models  # noqa: F401  # ensure models registered for Alembic

    configure_logging(app)
    _install_sqlite_transaction_hooks(app)
    _configure_audit_sink(app)
    _install_error_handlers(app)

    from .management import register_commands

    register_commands(app)
    _run_optional_create_all(app)

    return app


def _load_base_config(app: Flask, config: dict[str, Any] | None) -> None:
    app.config.from_object("agriledger.config.Config")
    if config:
        app.config.update(config)
    app.config["ENV_DIAGNOSTICS"] = ENV_DIAGNOSTICS
    for warning in ENV_DIAGNOSTICS.get("warnings", ()):
        logger.warning("Environment configuration warning: %s", warning)

    if config and "DATABASE_URL" in config:
        app.config["SQLALCHEMY_DATABASE_URI"] = config["DATABASE_URL"]
    if not app.config.get("SQLALCHEMY_DATABASE_URI"):
        raise RuntimeError("No database configured; set DATABASE_URL.")


def _apply_sqlalchemy_env_overrides(app: Flask) -> None:
    engine_opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS", {}) or {})
    changed = False

    def _apply_int(env_key: str, option_key: str):
        nonlocal changed
        value = os.environ.get(env_key)
        if value in (None, ""):
            return
        try:
            engine_opts[option_key] = int(value)
            changed = True
        except ValueError:
            logger.warning("Invalid integer for %s: %s", env_key, value)

    _apply_int("SQLALCHEMY_POOL_SIZE", "pool_size")
    _apply_int("SQLALCHEMY_MAX_OVERFLOW", "max_overflow")

    if changed:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_opts


def _configure_sqlite_engine_options(app):
    """SQLite needs a busy timeout for lock waits and no server-pool arguments."""
    uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if not uri.startswith("sqlite"):
        return
    opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS", {}))
    opts.pop("pool_size", None)
    opts.pop("max_overflow", None)
    opts.pop("pool_timeout", None)
    opts.pop("pool_use_lifo", None)
    connect_args = dict(opts.get("connect_args") or {})
    connect_args["timeout"] = float(app.config.get("LEDGER_LOCK_TIMEOUT_SECONDS", 5.0))
    connect_args["check_same_thread"] = False
    opts["connect_args"] = connect_args
    if uri in ("sqlite://", "sqlite:///:memory:"):
        opts["poolclass"] = StaticPool
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts


def _install_sqlite_transaction_hooks(app: Flask) -> None:
    """Writers take the database lock at BEGIN so their read-then-write is serialised like FOR UPDATE.

    Reads begin deferred and take no write lock.
    """
    if not app.config.get("SQLALCHEMY_DATABASE_URI", "").startswith("sqlite"):
        return

    with app.app_context():
        engine = db.engine

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE" if wants_write_lock() else "BEGIN")


def _configure_audit_sink(app: Flask) -> None:
    from .services.audit_sink import AuditSink

    sink = AuditSink.from_config(app.config)
    app.extensions["audit_sink"] = sink
    logger.info("Audit sink mode: %s", sink.mode)


def _install_error_handlers(app: Flask) -> None:
    from .services.errors import LedgerError

    @app.teardown_request
    def _rollback_on_error(exc):
        if exc is not None:
            db.session.rollback()

    @app.errorhandler(LedgerError)
    def _ledger_error_handler(err: LedgerError):
        db.session.rollback()
        return jsonify(err.to_dict()), err.http_status


def _run_optional_create_all(app: Flask) -> None:
    def _env_flag(key: str):
        value = os.environ.get(key)
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return None

    create_all_flag = _env_flag("SQLALCHEMY_CREATE_ALL")
    if app.config.get("SQLALCHEMY_CREATE_ALL"):
        create_all_flag = True
    if not create_all_flag:
        logger.info("db.create_all() not enabled; Alembic migrations are the source of truth")
        return

    logger.info("Creating tables via db.create_all()")
    with app.app_context():
        db.create_all()
