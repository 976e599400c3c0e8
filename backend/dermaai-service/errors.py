"""
Error taxonomy for the analysis pipeline.

Provider failures are data (`models.ProviderFailure`) by the time they leave an
adapter; only the exceptions below cross the orchestrator boundary.
"""

from __future__ import annotations

from typing import Optional

from models import FailureCode


class AnalysisValidationError(ValueError):
    """Request rejected before any provider call."""


class CaseBusyError(RuntimeError):
    def __init__(self, case_id: str) -> None:
        super().__init__(f"Case {case_id} is already being analyzed.")
        self.case_id = case_id


class PersistenceError(RuntimeError):
    """Storage write failed after a successful analysis; retry the whole request."""


class ProviderCallError(Exception):
    """Raised inside an adapter and converted to a ProviderFailure at its boundary."""

    def __init__(self, code: FailureCode, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
