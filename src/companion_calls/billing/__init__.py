"""Usage metering ledger and payment processor reporting."""
