"""
TxRadar - Bitcoin mempool transaction radar.

Follows unconfirmed transactions from a full node through their lifecycle
(pending, confirmed, replaced, evicted), resolves the value and age of the
coins they spend, and scores each one for how likely it is to be a
market-moving transfer before it confirms.
"""

__version__ = "0.1.0"
