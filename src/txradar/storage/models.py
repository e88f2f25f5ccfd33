"""
Pydantic models matching the tx_signals table.

Monetary fields are integer satoshis; score, fee rate and coin-days are
floats.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from txradar.core.models import ScoredTx


class SignalRecord(BaseModel):
    """Latest score of one transaction."""

    model_config = ConfigDict(frozen=True)

    txid: str
    score: float
    tier: str
    revision: int = 0
    rule_scores: dict[str, float] = Field(default_factory=dict)
    prevouts_resolved: bool = False
    total_input_value: int = 0
    fee: int = 0
    fee_rate: float = 0.0
    coin_days_destroyed: float = 0.0
    input_count: int = 0
    output_count: int = 0
    first_seen_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("rule_scores", mode="before")
    @classmethod
    def _decode_json(cls, value):
        # asyncpg returns JSONB as text unless a codec is registered
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def from_scored(cls, scored: ScoredTx) -> "SignalRecord":
        analyzed = scored.analyzed
        return cls(
            txid=scored.txid,
            score=scored.score,
            tier=scored.tier.value,
            revision=scored.revision,
            rule_scores={r.name: r.contribution for r in scored.rule_results},
            prevouts_resolved=analyzed.prevouts_resolved,
            total_input_value=analyzed.total_input_value,
            fee=analyzed.fee,
            fee_rate=analyzed.fee_rate,
            coin_days_destroyed=analyzed.coin_days_destroyed,
            input_count=len(analyzed.tx.inputs),
            output_count=len(analyzed.tx.outputs),
            first_seen_at=analyzed.seen_at,
        )
