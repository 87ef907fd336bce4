"""
Exceptions raised by the report ingestion pipeline.
"""

import json
from typing import Any, Optional


class IngestionError(Exception):
    """Base class for report ingestion errors."""
    pass


class ConfigurationError(IngestionError):
    """Required configuration (credentials, region) is missing or invalid."""
    pass


class NotFoundError(IngestionError):
    """A report dataset or account does not exist."""
    pass


class DatasetBusyError(IngestionError):
    """The dataset is claimed by a worker and cannot be changed by an operator."""
    pass


class ExternalApiError(IngestionError):
    """A call to the Amazon Ads API failed at the network or HTTP level."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        method: Optional[str] = None,
        url: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.method = method
        self.url = url

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class NoDownloadUrlError(ExternalApiError):
    """A completed report came back without any downloadable part."""
    pass


class ReportValidationError(IngestionError):
    """The downloaded report could not be decoded or did not match the row schema."""
    pass


class ResolutionError(IngestionError):
    """A report row could not be matched to a known target or product."""

    def __init__(self, message: str, row: Optional[dict[str, Any]] = None):
        if row is not None:
            message = f"{message}. Row: {json.dumps(row, default=str, sort_keys=True)}"
        super().__init__(message)
        self.row = row
