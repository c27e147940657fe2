import sys
import os
from datetime import datetime, timedelta, timezone

# Ensure repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from crypto import generate_ecdsa_keypair, ecdsa_sign
from protocol import LedgerConfig, StorageWriteError
from server.agreement import AgreementStateMachine
from server.ledger import MemoryLedger


# Pre-generated test keypairs (P-256)
OWNER_PRIV, OWNER_KEY = generate_ecdsa_keypair()
USER_PRIV, USER_KEY = generate_ecdsa_keypair()
OTHER_PRIV, OTHER_KEY = generate_ecdsa_keypair()

START_AMOUNT = 75000
FUTURE_DATE = "01/01/2999"
FUTURE_EXPIRY = datetime(2999, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
PENALTY_MESSAGE = "user leaked the licensed build"


class FakeClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, when: datetime):
        self.now = when


def sign_both(message: str = PENALTY_MESSAGE, owner_priv=OWNER_PRIV, user_priv=USER_PRIV):
    """Return (owner_sig, user_sig) over message."""
    return ecdsa_sign(owner_priv, message), ecdsa_sign(user_priv, message)


def request_args(deposit="1000", expiry=FUTURE_DATE, owner=OWNER_KEY, user=USER_KEY):
    return [owner, user, deposit, expiry, "1.2.3.4", "9000"]


class FailingLedger(MemoryLedger):
    """Memory ledger whose batched commits always fail."""

    def apply(self, writes):
        raise StorageWriteError("[-] disk full")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def config():
    return LedgerConfig(start_amount=START_AMOUNT)


@pytest.fixture
def machine(ledger, config, clock):
    """Initialized agreement, nothing requested yet."""
    m = AgreementStateMachine(ledger, config, clock=clock)
    m.initialize()
    return m


@pytest.fixture
def requested(machine):
    """Agreement in download_requested with a 1000 deposit."""
    machine.request(*request_args())
    return machine
