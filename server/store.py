"""Agreement record and balance storage for the APDL ledger.

Both stores sit on anything with get_state/put_state: a KeyValueLedger for
reads, or a LedgerTransaction while an operation is staging writes.

The record is canonical JSON under a single well-known key. Field names
match the records already written by deployed ledgers (PubKey, SoftwareOwner,
ContractExpiry, ...), so existing state decodes unchanged.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from crypto import canonical_json
from protocol import AgreementStatus, CONTRACT_KEY, RecordNotFoundError, StorageReadError


def _format_time(value: datetime) -> str:
    """RFC 3339, UTC rendered as Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.isoformat()
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


_FRACTION = re.compile(r"\.(\d+)")


def _parse_time(text: str) -> datetime:
    # datetime only keeps microseconds; older records carry nanoseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Party:
    public_key: str = ""
    ip_address: str = ""
    port: str = ""

    def to_dict(self) -> dict:
        return {"PubKey": self.public_key, "IPAddress": self.ip_address, "Port": self.port}

    @classmethod
    def from_dict(cls, data: dict | None) -> "Party":
        data = data or {}
        return cls(
            public_key=data.get("PubKey", ""),
            ip_address=data.get("IPAddress", ""),
            port=data.get("Port", ""),
        )


@dataclass
class AgreementRecord:
    status: AgreementStatus = AgreementStatus.UNINITIALIZED
    owner: Party = field(default_factory=Party)
    user: Party = field(default_factory=Party)
    expiry: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    deposit_amount: int = 0

    def to_dict(self) -> dict:
        return {
            "Status": self.status.value,
            "SoftwareOwner": self.owner.to_dict(),
            "SoftwareUser": self.user.to_dict(),
            "ContractExpiry": _format_time(self.expiry),
            "DepositAmount": self.deposit_amount,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgreementRecord":
        return cls(
            status=AgreementStatus(data["Status"]),
            owner=Party.from_dict(data.get("SoftwareOwner")),
            user=Party.from_dict(data.get("SoftwareUser")),
            expiry=_parse_time(data["ContractExpiry"]),
            deposit_amount=int(data.get("DepositAmount", 0)),
        )

    def encode(self) -> bytes:
        return canonical_json(self.to_dict())

    @classmethod
    def decode(cls, raw: bytes) -> "AgreementRecord":
        try:
            return cls.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageReadError(f"[-] Failed to decode agreement record: {e}")


class AgreementStore:
    """The single agreement record, addressed by a fixed key."""

    def __init__(self, state, key: str = CONTRACT_KEY):
        self.state = state
        self.key = key

    def load_raw(self) -> bytes:
        raw = self.state.get_state(self.key)
        if raw is None:
            raise RecordNotFoundError("[-] Failed to get contract: not initialized")
        return raw

    def load(self) -> AgreementRecord:
        return AgreementRecord.decode(self.load_raw())

    def exists(self) -> bool:
        return self.state.get_state(self.key) is not None

    def save(self, record: AgreementRecord) -> None:
        self.state.put_state(self.key, record.encode())


class BalanceLedger:
    """Per-participant integer balances stored as decimal strings.

    No floor or ceiling: balances may go negative.
    """

    def __init__(self, state):
        self.state = state

    def get_balance(self, key: str) -> int:
        """Absent or unparseable balances read as 0."""
        raw = self.state.get_state(key)
        if raw is None:
            return 0
        try:
            return int(raw.decode("ascii"))
        except (UnicodeDecodeError, ValueError):
            return 0

    def set_balance(self, key: str, amount: int) -> None:
        self.state.put_state(key, str(int(amount)).encode("ascii"))
