"""APDL agreement state machine.

    init --request--> download_requested --penalize--> penalized
                      download_requested --refund----> expired

Every operation runs inside one ledger transaction: validation happens
first, writes are staged, and the batch lands only if the operation returns.

Accounting rules kept as deployed:
- request sets BOTH parties' balances to start_amount - deposit.
- penalize debits the deposit from the user, with no floor at zero.
- refund credits the deposit back to the user.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Callable

from crypto import verify_signatures
from protocol import (
    AgreementStatus, LedgerConfig, DATE_FORMAT,
    STATE_TRANSITIONS, PENALTY_BLOCKED_STATES, OPERATION_ARITY, OP_REQUEST, OP_PENALIZE,
    REQUEST_ARG_NAMES, PENALIZE_ARG_NAMES,
    ArgumentCountError, ArgumentFormatError, PastExpiryError,
    InvalidStateTransitionError, NotYetExpiredError, SignatureVerificationError,
)
from server.ledger import KeyValueLedger
from server.store import AgreementRecord, AgreementStore, BalanceLedger, Party

log = logging.getLogger(__name__)


_DEPOSIT = re.compile(r"[+-]?[0-9]+")
_EXPIRY = re.compile(r"[0-9]{2}/[0-9]{2}/[0-9]{4}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_deposit(text: str) -> int:
    if not isinstance(text, str) or not _DEPOSIT.fullmatch(text):
        raise ArgumentFormatError("Invalid amount passed")
    amount = int(text)
    if amount < 0:
        raise ArgumentFormatError("Invalid amount passed")
    return amount


def parse_expiry(text: str) -> datetime:
    """MM/DD/YYYY -> midnight UTC of that date."""
    if not isinstance(text, str) or not _EXPIRY.fullmatch(text):
        raise ArgumentFormatError(f"Unable to parse: {text} Error: expected MM/DD/YYYY")
    try:
        parsed = datetime.strptime(text, DATE_FORMAT)
    except ValueError as e:
        raise ArgumentFormatError(f"Unable to parse: {text} Error: {e}")
    return parsed.replace(tzinfo=timezone.utc)


class AgreementStateMachine:
    """The five APDL operations over an injected ledger."""

    def __init__(self, ledger: KeyValueLedger, config: LedgerConfig | None = None,
                 clock: Callable[[], datetime] | None = None):
        self.ledger = ledger
        self.config = config or LedgerConfig()
        self.clock = clock or utc_now

    def _store(self, state) -> AgreementStore:
        return AgreementStore(state, self.config.contract_key)

    # --- initialize ---

    def initialize(self) -> str:
        record = AgreementRecord(expiry=self.clock())
        with self.ledger.transaction() as tx:
            self._store(tx).save(record)
        log.info("agreement initialized under key %r", self.config.contract_key)
        return "[+] Init completed\n"

    # --- request ---

    def request(self, owner_key: str, user_key: str, deposit_amount: str,
                expiry_date: str, user_ip: str, user_port: str) -> str:
        amount = parse_deposit(deposit_amount)
        expiry = parse_expiry(expiry_date)
        now = self.clock()
        if not expiry > now:
            raise PastExpiryError(
                f"Invalid (past) time passed: {expiry.strftime(DATE_FORMAT)}. "
                f"Time Now: {now.strftime(DATE_FORMAT)}"
            )

        with self.ledger.transaction() as tx:
            store = self._store(tx)
            if store.exists():
                current = store.load()
                if AgreementStatus.REQUESTED not in STATE_TRANSITIONS[current.status]:
                    raise InvalidStateTransitionError(
                        f"[-] Invalid status for download request. Current status: {current.status.value}"
                    )

            record = AgreementRecord(
                status=AgreementStatus.REQUESTED,
                owner=Party(owner_key, self.config.owner_ip, self.config.owner_port),
                user=Party(user_key, user_ip, user_port),
                expiry=expiry,
                deposit_amount=amount,
            )
            initial = self.config.start_amount - amount
            balances = BalanceLedger(tx)
            balances.set_balance(owner_key, initial)
            balances.set_balance(user_key, initial)
            store.save(record)

        log.info("download requested: deposit=%d expiry=%s", amount, expiry.date().isoformat())
        return "[+] Download request recorded\n"

    # --- penalize ---

    def penalize(self, message: str, owner_signature: str, user_signature: str) -> str:
        with self.ledger.transaction() as tx:
            store = self._store(tx)
            record = store.load()
            if record.status in PENALTY_BLOCKED_STATES:
                raise InvalidStateTransitionError(
                    f"[-] Invalid status for penalty. Current status: {record.status.value}"
                )

            public_keys = [record.owner.public_key, record.user.public_key]
            signatures = [owner_signature, user_signature]
            if not verify_signatures(message, public_keys, signatures,
                                     require_all=self.config.strict_signatures):
                cmp1 = f"{record.owner.public_key} vs. {owner_signature}"
                cmp2 = f"{record.user.public_key} vs. {user_signature}"
                log.warning("penalty rejected: signature verification failed")
                raise SignatureVerificationError(
                    "[-] Signature verification failed. Penalty not applied. "
                    f"comparisons: {cmp1}---{cmp2}"
                )

            balances = BalanceLedger(tx)
            user_key = record.user.public_key
            balances.set_balance(user_key, balances.get_balance(user_key) - record.deposit_amount)
            record.status = AgreementStatus.PENALIZED
            store.save(record)

        log.info("penalty applied: %d debited from user", record.deposit_amount)
        return "[+] Penalty applied\n"

    # --- refund ---

    def refund(self) -> str:
        with self.ledger.transaction() as tx:
            store = self._store(tx)
            record = store.load()
            if AgreementStatus.EXPIRED not in STATE_TRANSITIONS[record.status]:
                raise InvalidStateTransitionError(
                    f"[-] Invalid status for refund. Current status: {record.status.value}"
                )
            if not self.clock() > record.expiry:
                raise NotYetExpiredError("[-] APDL contract not yet expired")

            balances = BalanceLedger(tx)
            user_key = record.user.public_key
            record.status = AgreementStatus.EXPIRED
            store.save(record)
            balances.set_balance(user_key, balances.get_balance(user_key) + record.deposit_amount)

        log.info("agreement expired: %d refunded to user", record.deposit_amount)
        return "[+] APDL contract expired."

    # --- get_status ---

    def get_status(self) -> bytes:
        return self._store(self.ledger).load_raw()

    def get_record(self) -> AgreementRecord:
        return self._store(self.ledger).load()

    def get_balance(self, public_key: str) -> int:
        return BalanceLedger(self.ledger).get_balance(public_key)


def check_arity(fn: str, args: list[str]) -> None:
    """Raise ArgumentCountError unless args matches the operation's arity."""
    expected = OPERATION_ARITY[fn]
    if len(args) == expected:
        return
    if fn == OP_REQUEST:
        raise ArgumentCountError(
            f"Incorrect number of arguments. Got {len(args)}: {','.join(args)} "
            f"Expecting [{', '.join(REQUEST_ARG_NAMES)}]"
        )
    if fn == OP_PENALIZE:
        raise ArgumentCountError(
            f"Incorrect number of arguments. Got {len(args)}, "
            f"expecting [{', '.join(PENALIZE_ARG_NAMES)}]"
        )
    raise ArgumentCountError(f"{fn} takes no arguments, got {len(args)}")
