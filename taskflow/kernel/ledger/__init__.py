"""
Submission Ledger - engagement and submission history for tasks.
"""

from taskflow.kernel.ledger.ledger_service import SubmissionLedger

__all__ = [
    "SubmissionLedger",
]
