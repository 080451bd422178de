"""
x402 Pay-per-request Settlement Module.

This module implements the x402 challenge/response protocol for the gateway:
an action request without payment is answered with a 402 challenge, the caller
pays on-chain and resubmits a proof, and the proof is checked against the
ledger of confirmed transfers before the result is released.

Key components:
- lifecycle: request state machine (pending -> paid | expired)
- engine: policy evaluation (spend caps, allow-list, revocation)
- policy: durable policy document and its administration
- audit: bounded trail of denied attempts
- ledger: confirmed transfers used as proof ground truth
- storage: locked JSON documents with atomic writes

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
