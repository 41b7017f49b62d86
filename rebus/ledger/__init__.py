"""
Rebus Ledger Package.

Content-digest change detection for fragment files.
Requires Python 3.11+.
"""

from rebus.ledger.hash_ledger import HashLedger

__all__ = [
    "HashLedger",
]
