"""Checkout completion reconciliation for subscription purchases."""
