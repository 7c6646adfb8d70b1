# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""FastAPI application for the DCC Validation Service.

**HTTP Endpoints**

* ``POST /validate``: accept a :class:`ValidateRequest` body carrying the
  encoded DCC, the access token type and the acceptance conditions, run
  the validation pipeline, and return the ordered result list.

* ``GET /healthz``: service status and snapshot statistics for the
  signer certificate, business rule and value set stores.

**Background Services**

For every gateway URL that is configured, a snapshot refresher keeps the
corresponding store up to date.  Stores start empty; until the first
download completes, validation runs against empty snapshots (unknown
kid, no rules).

**Logging**

Structured JSON logging is configured at startup using the
``LOG_LEVEL`` setting.

Architecture
------------
The async lifespan context manager handles ordered startup and shutdown:

1. Configure logging.
2. Start snapshot refreshers.
3. Yield (application serves requests).
4. Stop snapshot refreshers.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import (
    BUSINESS_RULES_DOWNLOAD_INTERVAL,
    BUSINESS_RULES_LOCK_LIMIT,
    HTTP_HOST,
    HTTP_PORT,
    LOG_LEVEL,
    RULES_URL,
    SIGNER_CERTIFICATES_DOWNLOAD_INTERVAL,
    SIGNER_CERTIFICATES_LOCK_LIMIT,
    SIGNER_CERTIFICATES_URL,
    VALUE_SETS_DOWNLOAD_INTERVAL,
    VALUE_SETS_LOCK_LIMIT,
    VALUE_SETS_URL,
)
from app.dcc.exceptions import DccError, InvalidAcceptableTypeError, InvalidConditionsError
from app.dcc.models import ValidateRequest, ValidateResponse
from app.dcc.providers import CertificateStore, RulesStore, ValueSetStore
from app.dcc.refresh import (
    SnapshotRefresher,
    gateway_loader,
    parse_rules,
    parse_signer_certificates,
    parse_value_sets,
)
from app.dcc.validator import DccValidator


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """One JSON object per log line.

    Fields: ``timestamp``, ``level``, ``logger``, ``message``, ``module``,
    ``funcName`` and, when present, ``exception``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _configure_logging() -> None:
    """Install the JSON formatter on the root logger.

    Existing handlers are removed first to prevent duplicate output when
    running under uvicorn.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JSONFormatter())

    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ======================================================================
# Stores, validator and refreshers
# ======================================================================

certificate_store = CertificateStore()
rules_store = RulesStore()
value_set_store = ValueSetStore()

validator = DccValidator(
    certificate_provider=certificate_store,
    rules_provider=rules_store,
    value_set_provider=value_set_store,
)


def _build_refreshers() -> List[SnapshotRefresher]:
    refreshers: List[SnapshotRefresher] = []
    if SIGNER_CERTIFICATES_URL:
        refreshers.append(SnapshotRefresher(
            certificate_store,
            gateway_loader(SIGNER_CERTIFICATES_URL, parse_signer_certificates),
            interval=SIGNER_CERTIFICATES_DOWNLOAD_INTERVAL,
            lock_limit=SIGNER_CERTIFICATES_LOCK_LIMIT,
        ))
    if RULES_URL:
        refreshers.append(SnapshotRefresher(
            rules_store,
            gateway_loader(RULES_URL, parse_rules),
            interval=BUSINESS_RULES_DOWNLOAD_INTERVAL,
            lock_limit=BUSINESS_RULES_LOCK_LIMIT,
        ))
    if VALUE_SETS_URL:
        refreshers.append(SnapshotRefresher(
            value_set_store,
            gateway_loader(VALUE_SETS_URL, parse_value_sets),
            interval=VALUE_SETS_DOWNLOAD_INTERVAL,
            lock_limit=VALUE_SETS_LOCK_LIMIT,
        ))
    return refreshers


_refreshers: List[SnapshotRefresher] = []


# ======================================================================
# Application lifespan
# ======================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the snapshot refreshers around the serving period."""
    global _refreshers

    logger = logging.getLogger("dcc.main")

    _configure_logging()
    _refreshers = _build_refreshers()
    logger.info(
        "DCC Validation Service starting: HTTP=%s:%d, refreshers=%s, log_level=%s",
        HTTP_HOST, HTTP_PORT, [r.name for r in _refreshers], LOG_LEVEL,
    )

    for refresher in _refreshers:
        await refresher.start()

    yield

    logger.info("DCC Validation Service shutting down")
    for refresher in _refreshers:
        await refresher.stop()
    _refreshers = []
    logger.info("DCC Validation Service shutdown complete")


# ======================================================================
# FastAPI application
# ======================================================================

app = FastAPI(
    title="DCC Validation Service",
    description=(
        "Validates digital COVID certificates against access token "
        "conditions and returns an itemized result list."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# Permissive for standalone deployment; restrict origins in production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("dcc.main")


@app.exception_handler(InvalidAcceptableTypeError)
@app.exception_handler(InvalidConditionsError)
async def _bad_conditions_handler(request: Request, exc: DccError) -> JSONResponse:
    logger.info("Rejected validation request: %s", exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(DccError)
async def _dcc_error_handler(request: Request, exc: DccError) -> JSONResponse:
    logger.error("Validation aborted: %s", exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "internal validation error"})


# ======================================================================
# Endpoints
# ======================================================================


@app.post(
    "/validate",
    response_model=ValidateResponse,
    summary="Validate a DCC",
    description=(
        "Validate an HC1-encoded DCC at the requested access token type "
        "against the supplied conditions."
    ),
    tags=["validation"],
)
async def validate_endpoint(request: ValidateRequest) -> ValidateResponse:
    """Run the validation pipeline on a worker thread."""
    logger.info("POST /validate received: access_type=%s", request.access_token_type.name)
    results = await run_in_threadpool(
        validator.validate,
        request.dcc,
        request.conditions,
        request.access_token_type,
    )
    return ValidateResponse(results=results)


@app.get(
    "/healthz",
    summary="Health check",
    description="Service status and snapshot statistics.",
    tags=["health"],
)
async def healthz() -> JSONResponse:
    refreshers = {r.name: r.stats() for r in _refreshers}
    stores = {
        store.name: refreshers.get(store.name, store.stats())
        for store in (certificate_store, rules_store, value_set_store)
    }
    return JSONResponse(content={"status": "ok", "stores": stores}, status_code=200)


# ======================================================================
# Application runner (for direct invocation)
# ======================================================================


def main() -> None:
    """Run the service with uvicorn::

        python -m app.main
    """
    import uvicorn

    _configure_logging()
    logger.info("Starting DCC Validation Service: HTTP=%s:%d", HTTP_HOST, HTTP_PORT)

    uvicorn.run(
        "app.main:app",
        host=HTTP_HOST,
        port=HTTP_PORT,
        log_level=LOG_LEVEL.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
