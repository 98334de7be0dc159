# app/x402/__init__.py
"""
x402 micropayment engine.

Accepts small, frequent payments for metered access to agents, APIs and data,
priced in USD and settled in SOL on Solana.

Key components:
- rpc: Solana JSON-RPC client with ordered endpoint failover
- oracle: SOL/USD price oracle with cached, degrading sources
- submitter: Signs and submits payments, logging them as pending
- monitor: Reconciles pending transactions against the ledger
- sessions: Prepaid spending envelopes drawn down per use
- credits: Standing per-service credit balances
- analytics: Daily usage and revenue rollups
- middleware: FastAPI enforcement of the X-402-Payment header
- audit: Payment audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
