#!/usr/bin/env python3
"""
HTTP server for the OAuth 2.0 authorization endpoint

Builds a FastAPI app around the authorize route, wires the configured
authenticator and token issuer, and runs it with uvicorn.

Configuration comes from environment variables (see utils/config_manager.py),
optionally loaded from a .env file. OAUTH2_AUTHENTICATOR and
OAUTH2_TOKEN_ISSUER name zero-argument factories as ``module:attribute``.
"""

from __future__ import annotations

import argparse
import contextvars
import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request

from authorization.authentication import Authenticator
from authorization.oauth2_endpoints import TokenIssuer, setup_authorization_endpoint
from authorization.oauth2_storage import OAuth2EncryptedStorage, get_oauth2_storage, shutdown_oauth2_storage
from utils.config_manager import ConfigManager, get_config, load_object

logger = logging.getLogger(__name__)

# Correlation ID context for logs
_cid_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")

TEXT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - cid=%(cid)s - %(message)s'


class CidLogFilter(logging.Filter):
    """Inject correlation id from context into log records as record.cid."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cid = _cid_ctx.get()
        return True


class JSONLogFormatter(logging.Formatter):
    """Simple structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "cid": getattr(record, "cid", "-"),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload["file"] = record.pathname
        payload["line"] = record.lineno
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = "INFO", log_format: str = "text") -> None:
    """Configure root logging with correlation ids in text or JSON format."""
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JSONLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))
    handler.addFilter(CidLogFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def create_app(
    config: Optional[ConfigManager] = None,
    storage: Optional[OAuth2EncryptedStorage] = None,
    authenticator: Optional[Authenticator] = None,
    token_issuer: Optional[TokenIssuer] = None,
) -> FastAPI:
    """
    Create the FastAPI app serving the authorization endpoint.

    Collaborators not passed in are built from the configured factories.
    """
    config = config or get_config()

    for issue in config.validate_configuration():
        logger.warning(f"Configuration issue: {issue}")

    if authenticator is None:
        if not config.integration.authenticator:
            raise RuntimeError("No authenticator configured (set OAUTH2_AUTHENTICATOR)")
        authenticator = load_object(config.integration.authenticator)()
    if token_issuer is None:
        if not config.integration.token_issuer:
            raise RuntimeError("No token issuer configured (set OAUTH2_TOKEN_ISSUER)")
        token_issuer = load_object(config.integration.token_issuer)()

    owns_storage = storage is None
    if owns_storage:
        storage = get_oauth2_storage(
            db_path=config.storage.db_path,
            encryption_key=config.storage.encryption_key,
            pending_request_ttl=config.storage.pending_request_ttl,
            cleanup_interval=config.storage.cleanup_interval,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_storage:
            shutdown_oauth2_storage()

    app = FastAPI(title="OAuth 2.0 Authorization Endpoint", lifespan=lifespan)

    # Correlation-ID and timing middleware
    @app.middleware("http")
    async def add_correlation_and_timing(request: Request, call_next):
        # Reuse inbound correlation id if provided
        corr_id = request.headers.get("X-Correlation-Id") or str(uuid.uuid4())
        request.state.correlation_id = corr_id
        token = _cid_ctx.set(corr_id)
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = int((time.perf_counter() - start) * 1000)
                logger.warning(f"{request.method} {request.url.path} cid={corr_id} dur_ms={duration_ms} error={e}")
                raise
            duration_ms = int((time.perf_counter() - start) * 1000)
            response.headers["X-Correlation-Id"] = corr_id
            response.headers["Server-Timing"] = f"total;dur={duration_ms}"
            logger.debug(f"{request.method} {request.url.path} -> {response.status_code} dur_ms={duration_ms}")
            return response
        finally:
            _cid_ctx.reset(token)

    setup_authorization_endpoint(
        app,
        storage=storage,
        authenticator=authenticator,
        token_issuer=token_issuer,
        path=config.server.authorize_path,
    )
    return app


def main() -> int:
    load_dotenv()
    try:
        config = get_config()
    except ValueError as e:
        logger.error(f"Cannot start authorization endpoint: invalid configuration: {e}")
        return 1

    parser = argparse.ArgumentParser(description="OAuth 2.0 authorization endpoint")
    parser.add_argument("--host", default=config.server.host)
    parser.add_argument("--port", type=int, default=config.server.port)
    parser.add_argument("--log-level", default=config.server.log_level)
    parser.add_argument("--log-format", choices=["text", "json"], default=config.server.log_format)
    args = parser.parse_args()

    configure_logging(args.log_level, args.log_format)

    try:
        app = create_app(config)
    except (RuntimeError, ImportError, AttributeError, ValueError) as e:
        logger.error(f"Cannot start authorization endpoint: {e}")
        return 1

    logger.info(f"Starting authorization endpoint on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
