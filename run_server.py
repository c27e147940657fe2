#!/usr/bin/env python3
"""APDL ledger server.

Configuration comes from env vars:
  APDL_DB                 SQLite ledger path (default: in-memory)
  APDL_PORT               listen port (default 8000)
  APDL_HOST               listen address (default 127.0.0.1)
  APDL_LOG_LEVEL          logging level (default INFO)
  APDL_INIT               "1" to write a fresh agreement record at startup
                          when none exists
  APDL_START_AMOUNT, APDL_CONTRACT_KEY, APDL_OWNER_IP, APDL_OWNER_PORT,
  APDL_STRICT_SIGNATURES  see protocol.LedgerConfig
"""

import logging
import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from protocol import DEFAULT_PORT, LedgerConfig
from server.app import create_app
from server.ledger import SQLiteLedger

log = logging.getLogger("apdl")


def build_app():
    db_path = os.environ.get("APDL_DB", ":memory:")
    config = LedgerConfig.from_env()
    ledger = SQLiteLedger(db_path)
    app = create_app(ledger=ledger, config=config)

    if os.environ.get("APDL_INIT", "") == "1" and ledger.get_state(config.contract_key) is None:
        app.state.machine.initialize()

    log.info("ledger at %s, contract key %r, start amount %d, strict signatures %s",
             db_path, config.contract_key, config.start_amount, config.strict_signatures)
    return app


def main():
    logging.basicConfig(
        level=os.environ.get("APDL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        port = int(os.environ.get("APDL_PORT", str(DEFAULT_PORT)))
        app = build_app()
    except ValueError as e:
        print(f"Bad configuration: {e}", file=sys.stderr)
        sys.exit(1)
    host = os.environ.get("APDL_HOST", "127.0.0.1")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
