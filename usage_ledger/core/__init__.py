"""
Core modules for the usage ledger.

This package contains validation, aggregation, watermark tracking,
reconciliation, pricing and the invoice ledger.
"""
