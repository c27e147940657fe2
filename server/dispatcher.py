"""Command dispatch: (operation name, string args) -> state machine -> Response.

Mirrors how a ledger platform invokes contract code: every call is a
function name plus an ordered list of strings, and every outcome is either
a success payload or an error message.
"""

import logging
from dataclasses import dataclass

from protocol import (
    OPERATION_ALIASES, OPERATION_ARITY,
    OP_INITIALIZE, OP_REQUEST, OP_PENALIZE, OP_REFUND, OP_GET_STATUS,
    APDLError, UnknownOperationError,
)
from server.agreement import AgreementStateMachine, check_arity

log = logging.getLogger(__name__)

OK = 200
ERROR = 500


@dataclass
class Response:
    status: int
    payload: bytes = b""
    message: str = ""
    error: APDLError | None = None

    @property
    def ok(self) -> bool:
        return self.status == OK

    @classmethod
    def success(cls, payload: bytes | str) -> "Response":
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return cls(OK, payload=payload)

    @classmethod
    def failure(cls, err: APDLError) -> "Response":
        return cls(ERROR, message=str(err), error=err)


def resolve_operation(fn: str) -> str:
    """Canonical operation name. Raises UnknownOperationError."""
    name = OPERATION_ALIASES.get(fn, fn)
    if name not in OPERATION_ARITY:
        raise UnknownOperationError(f"[-] Unknown function: {fn}")
    return name


class Dispatcher:
    def __init__(self, machine: AgreementStateMachine):
        self.machine = machine
        self._handlers = {
            OP_INITIALIZE: machine.initialize,
            OP_REQUEST: machine.request,
            OP_PENALIZE: machine.penalize,
            OP_REFUND: machine.refund,
            OP_GET_STATUS: machine.get_status,
        }

    def call(self, fn: str, args: list[str] | None = None):
        """Run an operation and return its raw result. APDLError propagates."""
        args = list(args or [])
        name = resolve_operation(fn)
        check_arity(name, args)
        return self._handlers[name](*args)

    def invoke(self, fn: str, args: list[str] | None = None) -> Response:
        """Run an operation and wrap the outcome in a Response."""
        try:
            result = self.call(fn, args)
        except APDLError as e:
            log.warning("%s rejected: %s", fn, e)
            return Response.failure(e)
        return Response.success(result)
