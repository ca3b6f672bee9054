"""Loyalty points ledger: order store, balance ledger and accrual reconciliation."""
