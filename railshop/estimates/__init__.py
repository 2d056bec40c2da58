"""Estimates — versioned submissions, line decisions and approval packets."""

from railshop.estimates.approval import approval_aggregator
from railshop.estimates.decisions import decision_engine
from railshop.estimates.store import estimate_store

__all__ = ["estimate_store", "decision_engine", "approval_aggregator"]
