#!/usr/bin/env python3
"""apdl -- command line for the APDL escrow ledger.

Usage:
  apdl keygen <key.pem>              new P-256 key; prints its public key id
  apdl pubkey <key.pem>              print the public key id of a saved key
  apdl sign <key.pem> <message>      print this party's "r,s" signature
  apdl invoke <fn> [args...]         call an operation on the server
  apdl status                        print the agreement record
  apdl balance <public_key>          print a participant's balance

Operations for invoke: initialize, request, penalize, refund, get_status.
  apdl invoke request <owner_key> <user_key> <deposit> <MM/DD/YYYY> <user_ip> <user_port>
  apdl invoke penalize <message> <owner_sig> <user_sig>

Server URL comes from APDL_URL (default http://localhost:8000).
"""

import asyncio
import json
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import httpx

from client import APDLClient, APDLClientError
from crypto import (
    generate_ecdsa_keypair, save_ecdsa_key, load_ecdsa_key,
    encode_public_key, ecdsa_sign,
)

DEFAULT_URL = "http://localhost:8000"


def _usage_error(msg: str) -> int:
    print(f"apdl: {msg}", file=sys.stderr)
    print("Run 'apdl --help' for usage.", file=sys.stderr)
    return 2


def cmd_keygen(path: str) -> int:
    if os.path.exists(path):
        print(f"apdl: refusing to overwrite {path}", file=sys.stderr)
        return 1
    private_key, key_id = generate_ecdsa_keypair()
    save_ecdsa_key(path, private_key)
    print(key_id)
    return 0


def _load_key(path: str):
    try:
        return load_ecdsa_key(path)
    except (OSError, ValueError) as e:
        print(f"apdl: cannot load key {path}: {e}", file=sys.stderr)
        return None


def cmd_pubkey(path: str) -> int:
    private_key = _load_key(path)
    if private_key is None:
        return 1
    print(encode_public_key(private_key.public_key()))
    return 0


def cmd_sign(path: str, message: str) -> int:
    private_key = _load_key(path)
    if private_key is None:
        return 1
    print(ecdsa_sign(private_key, message))
    return 0


async def _remote(command: str, args: list[str]):
    client = APDLClient(base_url=os.environ.get("APDL_URL", DEFAULT_URL))
    if command == "invoke":
        return await client.invoke(args[0], args[1:])
    if command == "status":
        return json.dumps(await client.get_status(), indent=2)
    return str(await client.get_balance(args[0]))


def cmd_remote(command: str, args: list[str]) -> int:
    try:
        out = asyncio.run(_remote(command, args))
    except APDLClientError as e:
        print(f"apdl: {e.detail}", file=sys.stderr)
        return 1
    except httpx.HTTPError as e:
        print(f"apdl: cannot reach server: {e}", file=sys.stderr)
        return 1
    print(out.rstrip("\n"))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or args[0] in ("-h", "--help"):
        print(__doc__.strip())
        return 0

    command, rest = args[0], args[1:]
    if command == "keygen":
        if len(rest) != 1:
            return _usage_error("keygen takes a key path")
        return cmd_keygen(rest[0])
    if command == "pubkey":
        if len(rest) != 1:
            return _usage_error("pubkey takes a key path")
        return cmd_pubkey(rest[0])
    if command == "sign":
        if len(rest) != 2:
            return _usage_error("sign takes a key path and a message")
        return cmd_sign(rest[0], rest[1])
    if command == "invoke":
        if not rest:
            return _usage_error("invoke needs an operation name")
        return cmd_remote(command, rest)
    if command == "status":
        return cmd_remote(command, [])
    if command == "balance":
        if len(rest) != 1:
            return _usage_error("balance takes a public key")
        return cmd_remote(command, rest)
    return _usage_error(f"unknown command: {command}")


if __name__ == "__main__":
    sys.exit(main())
