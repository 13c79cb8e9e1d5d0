"""
x402 payment facilitator for Cronos.

Verifies and settles HTTP 402 micropayments authorized by signed, single-use
ERC-20 transfer payloads.
"""

__version__ = "0.1.0"
