"""
Error taxonomy for the transaction explorer
Shared by providers, ingestion, annotations and the HTTP layer
"""

from typing import Any, Optional


GENERIC_LOAD_ERROR = "Unable to load transactions. Please try again later."


class ExplorerError(Exception):
    """Base class for explorer errors"""


class ConfigurationError(ExplorerError):
    """Missing required static configuration (API key, chain entry)"""


class UpstreamError(ExplorerError):
    """Explorer or RPC endpoint returned a failure status"""

    def __init__(
        self,
        detail: str,
        public_message: str = GENERIC_LOAD_ERROR,
        payload: Optional[Any] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.public_message = public_message
        self.payload = payload


class NetworkError(ExplorerError):
    """All configured endpoints for a provider are exhausted"""


class TokenResolutionError(ExplorerError):
    """Token metadata lookup failed; callers degrade to the unknown token"""


class PublishError(ExplorerError):
    """Annotation publish was rejected by every relay"""


class NotAuthenticatedError(ExplorerError):
    """No signing key is available"""
