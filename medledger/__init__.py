"""
MedLedger: verifiable patient records and consent grants backed by an
append-only ledger and a content-addressed blob store.
"""

__version__ = "0.1.0"
