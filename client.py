"""API client for the APDL ledger server.

Thin HTTP client with a pluggable transport interface.
Parties sign penalty messages locally; only "r,s" strings cross the wire.
"""

import json
from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx

from crypto import ecdsa_sign


class APDLClientError(Exception):
    """Server rejected an operation."""

    def __init__(self, status: int, detail: str):
        super().__init__(f"{status}: {detail}")
        self.status = status
        self.detail = detail


class Transport(ABC):
    """Override this to reach the ledger some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict | None = None) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to an APDL server over HTTP."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @staticmethod
    def _check(resp: httpx.Response) -> dict:
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail", resp.text)
            except ValueError:
                detail = resp.text
            raise APDLClientError(resp.status_code, str(detail))
        return resp.json()

    async def post(self, path: str, data: dict | None = None) -> dict:
        body = json.dumps(data or {})
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            return self._check(resp)

    async def get(self, path: str) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{self.base_url}{path}", timeout=self.timeout)
            return self._check(resp)


class APDLClient:
    """High-level client: one coroutine per ledger operation."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000"):
        self.transport = transport or HTTPTransport(base_url)

    async def initialize(self) -> str:
        resp = await self.transport.post("/initialize")
        return resp["message"]

    async def request(self, owner_key: str, user_key: str, deposit_amount: int | str,
                      expiry_date: str, user_ip: str, user_port: str | int) -> dict:
        """Open the agreement. expiry_date is MM/DD/YYYY."""
        return await self.transport.post("/request", {
            "owner_key": owner_key,
            "user_key": user_key,
            "deposit_amount": str(deposit_amount),
            "expiry_date": expiry_date,
            "user_ip": user_ip,
            "user_port": str(user_port),
        })

    async def penalize(self, message: str, owner_signature: str, user_signature: str) -> str:
        resp = await self.transport.post("/penalize", {
            "message": message,
            "owner_signature": owner_signature,
            "user_signature": user_signature,
        })
        return resp["message"]

    async def refund(self) -> str:
        resp = await self.transport.post("/refund")
        return resp["message"]

    async def get_status(self) -> dict:
        return await self.transport.get("/status")

    async def get_balance(self, public_key: str) -> int:
        resp = await self.transport.get(f"/balances/{quote(public_key, safe='')}")
        return resp["balance"]

    async def invoke(self, fn: str, args: list[str] | None = None) -> str:
        resp = await self.transport.post("/invoke", {"fn": fn, "args": list(args or [])})
        return resp["payload"]


def sign_penalty(private_key, message: str) -> str:
    """Produce this party's "r,s" signature over a penalty message."""
    return ecdsa_sign(private_key, message)
