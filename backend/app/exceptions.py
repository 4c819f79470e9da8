"""
Error types shared by the automation engine.
"""

from typing import Any, Optional


class ConfigurationError(Exception):
    """Rule or service misconfiguration. The rule fails without touching the account."""


class AdsApiError(Exception):
    """
    A failed Amazon Ads API call.
    status is the HTTP status (500 for transport failures); details is the
    decoded error body, or {"message": ...} when there is none.
    """

    def __init__(self, status: int, details: Optional[Any] = None, message: Optional[str] = None):
        self.status = status
        self.details = details if details is not None else {}
        super().__init__(message or f"Amazon Ads API error {status}: {self.details}")

    def to_dict(self) -> dict:
        return {"status": self.status, "details": self.details}
