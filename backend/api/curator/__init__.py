"""
Question curator: work queue, bot ledger and vector dedup pipeline for
autonomous content bots.
"""

__version__ = "0.1.0"
