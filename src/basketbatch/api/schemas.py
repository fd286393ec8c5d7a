from __future__ import annotations

"""Pydantic request schemas for the public API.

Amounts travel as decimal strings in whole units ("1000", "9.97"); the engine
converts them to 18-decimal base units. Responses carry base-unit integers.
"""

from typing import Optional, Union

from pydantic import BaseModel, Field


class DepositRequest(BaseModel):
    direction: str = Field(..., description='"mint" or "redeem"')
    account: str = Field(..., description="Depositing account id")
    amount: Union[str, int] = Field(..., description='Decimal amount in whole units, e.g. "1000"')

    # Any extra fields are ignored (forward compatible)
    model_config = {"extra": "allow"}


class ClaimRequest(BaseModel):
    account: str = Field(..., description="Account claiming its share")

    model_config = {"extra": "allow"}


class ProcessRequest(BaseModel):
    direction: str = Field(..., description='"mint" or "redeem"')
    slippage_bps: Optional[int] = Field(default=None, description="Overrides the configured tolerance")
    dry_run: bool = Field(default=False, description="Price the open batch without freezing or submitting")

    model_config = {"extra": "allow"}


class ConfirmRequest(BaseModel):
    output_total: Union[str, int] = Field(..., description="Realized output in whole units")

    model_config = {"extra": "allow"}
