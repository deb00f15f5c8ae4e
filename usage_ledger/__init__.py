"""
Usage metering and billing ledger.
"""
