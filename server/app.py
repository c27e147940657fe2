# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the APDL ledger (FastAPI).

Endpoints for the agreement lifecycle: initialize, request, penalize,
refund, status and balance queries. POST /invoke takes the raw
(function, args) form used by ledger tooling and routes it through the
same dispatcher.

Penalties are authorized by the owner's and user's ECDSA signatures over
a shared message, checked against the keys recorded at request time.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime
from typing import Callable

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response as HTTPResponse
from pydantic import BaseModel

from protocol import (
    LedgerConfig, OP_INITIALIZE, OP_REQUEST, OP_PENALIZE, OP_REFUND, OP_GET_STATUS,
    APDLError, ArgumentCountError, ArgumentFormatError, PastExpiryError,
    InvalidStateTransitionError, NotYetExpiredError, SignatureVerificationError,
    RecordNotFoundError, StorageError, UnknownOperationError,
)
from server.agreement import AgreementStateMachine
from server.dispatcher import Dispatcher
from server.ledger import KeyValueLedger, MemoryLedger


# --- Request/Response models ---

class InvokeRequest(BaseModel):
    fn: str
    args: list[str] = []

class DownloadRequest(BaseModel):
    owner_key: str
    user_key: str
    deposit_amount: str | int
    expiry_date: str  # MM/DD/YYYY
    user_ip: str
    user_port: str | int

class PenaltyRequest(BaseModel):
    message: str
    owner_signature: str  # "r,s"
    user_signature: str   # "r,s"


# Most specific first
_ERROR_STATUS = [
    (RecordNotFoundError, 404),
    (StorageError, 500),
    (ArgumentCountError, 400),
    (ArgumentFormatError, 400),
    (PastExpiryError, 400),
    (UnknownOperationError, 400),
    (SignatureVerificationError, 403),
    (InvalidStateTransitionError, 409),
    (NotYetExpiredError, 409),
]


def _http_error(err: APDLError) -> HTTPException:
    for cls, code in _ERROR_STATUS:
        if isinstance(err, cls):
            return HTTPException(code, str(err))
    return HTTPException(500, str(err))


# --- App factory ---

def create_app(
    ledger: KeyValueLedger | None = None,
    config: LedgerConfig | None = None,
    clock: Callable[[], datetime] | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    If config is not provided, it is read from APDL_* env vars.
    """

    app = FastAPI(title="APDL Ledger", version="1.0")

    _ledger = ledger or MemoryLedger()
    _config = config or LedgerConfig.from_env()
    _machine = AgreementStateMachine(_ledger, _config, clock=clock)
    _dispatcher = Dispatcher(_machine)

    app.state.ledger = _ledger
    app.state.config = _config
    app.state.machine = _machine
    app.state.dispatcher = _dispatcher

    def _run(fn: str, args: list[str]):
        try:
            return _dispatcher.call(fn, args)
        except APDLError as e:
            raise _http_error(e)

    @app.post("/invoke")
    async def invoke(req: InvokeRequest):
        """Raw dispatch: any operation name (or legacy alias) plus string args."""
        result = _run(req.fn, req.args)
        if isinstance(result, bytes):
            result = result.decode("utf-8")
        return {"status": "ok", "payload": result}

    @app.post("/initialize")
    async def initialize():
        return {"status": "ok", "message": _run(OP_INITIALIZE, [])}

    @app.post("/request")
    async def request_download(req: DownloadRequest):
        """Open the agreement. Both balances become start_amount - deposit."""
        args = [
            req.owner_key, req.user_key, str(req.deposit_amount),
            req.expiry_date, req.user_ip, str(req.user_port),
        ]
        message = _run(OP_REQUEST, args)
        record = _machine.get_record()
        return {"status": "ok", "message": message, "agreement": record.to_dict()}

    @app.post("/penalize")
    async def penalize(req: PenaltyRequest):
        """Debit the deposit from the user. Needs both parties' signatures."""
        message = _run(OP_PENALIZE, [req.message, req.owner_signature, req.user_signature])
        return {"status": "ok", "message": message}

    @app.post("/refund")
    async def refund():
        """Return the deposit to the user once the expiry date has passed."""
        return {"status": "ok", "message": _run(OP_REFUND, [])}

    @app.get("/status")
    async def get_status():
        """The stored agreement record, byte for byte."""
        raw = _run(OP_GET_STATUS, [])
        return HTTPResponse(content=raw, media_type="application/json")

    @app.get("/balances/{public_key}")
    async def get_balance(public_key: str):
        try:
            balance = _machine.get_balance(public_key)
        except APDLError as e:
            raise _http_error(e)
        return {"public_key": public_key, "balance": balance}

    return app
