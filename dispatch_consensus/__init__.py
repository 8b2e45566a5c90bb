"""
Dispatch Consensus: a ledger-coordinated economic dispatch agent.

Each agent exchanges a price signal and a supply/demand mismatch with its
peers over a tamper-evident broadcast ledger until all of them settle on
the same price and a balanced generation schedule.
"""

__version__ = "0.1.0"
