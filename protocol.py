"""Shared constants, configuration and error types for the APDL ledger.

All modules import from here to avoid circular dependencies.
"""

import os
from dataclasses import dataclass
from enum import Enum

# --- Protocol Constants ---

START_AMOUNT = 75000  # baseline balance before deposit accounting
CONTRACT_KEY = "contract"
OWNER_IP = "0.0.0.0"
OWNER_PORT = "0"

# Expiry dates arrive as MM/DD/YYYY
DATE_FORMAT = "%m/%d/%Y"

DEFAULT_PORT = 8000


# --- State Machine ---

class AgreementStatus(Enum):
    UNINITIALIZED = "init"
    REQUESTED = "download_requested"
    PENALIZED = "penalized"
    EXPIRED = "expired"


# Forward-only graph: current status -> statuses reachable from it
STATE_TRANSITIONS = {
    AgreementStatus.UNINITIALIZED: {AgreementStatus.REQUESTED},
    AgreementStatus.REQUESTED: {AgreementStatus.PENALIZED, AgreementStatus.EXPIRED},
    AgreementStatus.PENALIZED: set(),
    AgreementStatus.EXPIRED: set(),
}

# Penalty is refused only from these; an expired agreement can still be penalized
PENALTY_BLOCKED_STATES = {AgreementStatus.UNINITIALIZED, AgreementStatus.PENALIZED}


# --- Operations ---

OP_INITIALIZE = "initialize"
OP_REQUEST = "request"
OP_PENALIZE = "penalize"
OP_REFUND = "refund"
OP_GET_STATUS = "get_status"

# Names used by earlier deployments of the chaincode
OPERATION_ALIASES = {
    "init": OP_INITIALIZE,
    "download_request": OP_REQUEST,
    "penalty": OP_PENALIZE,
}

OPERATION_ARITY = {
    OP_INITIALIZE: 0,
    OP_REQUEST: 6,
    OP_PENALIZE: 3,
    OP_REFUND: 0,
    OP_GET_STATUS: 0,
}

REQUEST_ARG_NAMES = [
    "owner_key", "user_key", "deposit_amount", "expiry_date", "user_ip", "user_port",
]
PENALIZE_ARG_NAMES = ["message", "owner_signature", "user_signature"]


# --- Configuration ---

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LedgerConfig:
    """Process-wide settings, built once at startup and injected."""

    start_amount: int = START_AMOUNT
    contract_key: str = CONTRACT_KEY
    owner_ip: str = OWNER_IP
    owner_port: str = OWNER_PORT
    strict_signatures: bool = False

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        raw_amount = os.environ.get("APDL_START_AMOUNT", str(START_AMOUNT))
        try:
            start_amount = int(raw_amount)
        except ValueError:
            raise ValueError(f"APDL_START_AMOUNT must be an integer, got {raw_amount!r}")
        return cls(
            start_amount=start_amount,
            contract_key=os.environ.get("APDL_CONTRACT_KEY", CONTRACT_KEY),
            owner_ip=os.environ.get("APDL_OWNER_IP", OWNER_IP),
            owner_port=os.environ.get("APDL_OWNER_PORT", OWNER_PORT),
            strict_signatures=_env_flag("APDL_STRICT_SIGNATURES"),
        )


# --- Errors ---

class APDLError(Exception):
    """Base class for every failure surfaced to a caller."""


class ArgumentCountError(APDLError):
    pass


class ArgumentFormatError(APDLError):
    pass


class PastExpiryError(APDLError):
    pass


class StorageError(APDLError):
    pass


class StorageReadError(StorageError):
    pass


class RecordNotFoundError(StorageReadError):
    pass


class StorageWriteError(StorageError):
    pass


class InvalidStateTransitionError(APDLError):
    pass


class NotYetExpiredError(APDLError):
    pass


class SignatureVerificationError(APDLError):
    pass


class UnknownOperationError(APDLError):
    pass
