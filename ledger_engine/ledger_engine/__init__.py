"""CreditDesk domain core: credit ledger, subscription engine and credential vault."""

__version__ = "0.3.0"
