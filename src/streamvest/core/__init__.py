"""Core ledger, schedule and converter components."""
