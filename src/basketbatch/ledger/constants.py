# src/basketbatch/ledger/constants.py
from __future__ import annotations

"""Fixed-point and batching constants.

- Every amount, value and rate is an int scaled by SCALE (18 decimals).
- Slippage is expressed in basis points out of BPS_DENOMINATOR.
"""

UNIT_DECIMALS: int = 18
SCALE: int = 10**UNIT_DECIMALS

BPS_DENOMINATOR: int = 10_000

# Minimum elapsed time between two settlements of the same direction.
DEFAULT_COOLDOWN_SECONDS: int = 1_800

# Default slippage tolerance for settlement pricing (0.5%).
DEFAULT_SLIPPAGE_BPS: int = 50
