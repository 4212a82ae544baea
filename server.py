#!/usr/bin/env python3
"""
HTLC Resolver Server
Cross-ledger HTLC swap coordination: watches source ledgers for locks, locks
on the destination ledger, relays revealed secrets, refunds on expiry.

Endpoints:
  GET  /api/status                     - Health check, monitor stats
  GET  /api/chains                     - Configured ledgers
  GET  /api/orders                     - List orders (?status=)
  POST /api/orders                     - Announce an order
  GET  /api/orders/{id}                - Order status
  GET  /api/metrics                    - Counts, volume, success rate, alerts
  GET  /api/deposits                   - Safety deposit balances
  POST /api/deposits                   - Credit collateral
  POST /api/deposits/withdraw          - Withdraw free collateral
  POST /api/admin/orders/{id}/slash    - Slash an order's safety deposit

Configuration comes from the environment (see resolver/config.py), ledgers
from the JSON file named by LEDGERS_CONFIG.
"""

import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from resolver import __version__
from resolver.config import ResolverConfig
from resolver.service import ResolverService
from routes import operations

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="HTLC Resolver",
    description="Cross-ledger HTLC swap coordinator",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(operations.router)

_service = None


# =============================================================================
# FASTAPI STARTUP/SHUTDOWN EVENTS
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Build the resolver from the environment and start monitors."""
    global _service
    config = ResolverConfig.from_env()
    if not config.ledgers:
        log.warning("No ledgers configured (set LEDGERS_CONFIG) - resolver is idle")
    _service = ResolverService(config)
    operations.configure(_service)
    _service.start()
    log.info(f"Resolver ready: ledgers={[c.ledger_id for c in config.ledgers]} "
             f"store={'redis' if config.redis_url else 'memory'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop monitors and the maintenance loop."""
    if _service is not None:
        _service.stop()
    log.info("Resolver stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting HTLC Resolver on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
