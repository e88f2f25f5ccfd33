"""
Signals layer test fixtures.

Rules are pure functions of (AnalyzedTx, RuleContext), so fixtures only
build analyses; nothing here needs a mock.
"""
import pytest

from txradar.core import SATS_PER_BTC, build_analyzed_tx
from txradar.signals import RuleContext


@pytest.fixture
def context(now):
    return RuleContext(now=now, tip_height=850_000, pending_count=50_000)


@pytest.fixture
def analyze(make_tx, make_prevout, now):
    """
    Build a fully resolved AnalyzedTx.

    Usage:
        analyzed = analyze(input_values=[SATS_PER_BTC], days_old=100)
    """
    def build(
        seed: str = "signal",
        input_values=(SATS_PER_BTC,),
        days_old: float = 100,
        output_values=None,
        sequence: int = 0xFFFFFFFF,
        vsize: int = 200,
        exchange_flow=None,
    ):
        if output_values is None:
            output_values = (sum(input_values),)
        tx = make_tx(
            seed,
            n_inputs=len(input_values),
            output_values=tuple(output_values),
            sequence=sequence,
            vsize=vsize,
        )
        prevouts = [
            make_prevout(txin.prev_txid, txin.prev_vout, value=value, days_old=days_old)
            for txin, value in zip(tx.inputs, input_values)
        ]
        return build_analyzed_tx(tx, prevouts, now, exchange_flow)

    return build
