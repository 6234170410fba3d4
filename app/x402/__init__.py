# app/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module gates the gas prediction endpoint behind a per-request USDC
payment proven by an onchain transaction hash (X-Payment header).

Key components:
- ratelimit: Token bucket rate limiting per client IP
- payments: Onchain payment verification with replay protection
- pipeline: Rate limit -> payment -> cache -> prediction composition
- responses: HTTP mapping of pipeline outcomes
- audit: Transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
