import re
from typing import Optional, Dict, Any


class CostLensException(Exception):
    """Base exception for all CostLens errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AdapterError(CostLensException):
    """
    Raised when an external Azure collaborator fails.
    Error messages are sanitized so SAS signatures and bearer tokens never leak.
    """
    def __init__(
        self,
        message: str,
        code: str = "adapter_error",
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status = status
        super().__init__(self._sanitize(message), code=code, status_code=502, details=details)

    def _sanitize(self, msg: str) -> str:
        """Remove signatures, tokens and secrets from error messages."""
        msg = re.sub(r'(?i)(sig|access_token|client_secret|token|password|signature)=[^&\s]+', r'\1=[REDACTED]', msg)
        msg = re.sub(r'(?i)bearer\s+[a-z0-9\-_.]+', 'Bearer [REDACTED]', msg)
        return msg


class ConfigurationError(CostLensException):
    """Raised when customer configuration is missing (storage account, SAS reference, connection)."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class ResourceNotFoundError(CostLensException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class StorageAccessError(CostLensException):
    """Raised when the blob store rejects the SAS credential."""
    def __init__(self, message: str = "SAS token has expired or is invalid", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="storage_access_denied", status_code=403, details=details)


class SecretStoreError(CostLensException):
    """Raised when a secret cannot be retrieved from the secret store."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="secret_store_error", status_code=500, details=details)


class CacheStoreError(CostLensException):
    """Raised when the refresh cache cannot be read or written."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="cache_store_error", status_code=500, details=details)


class RefreshTimeoutError(CostLensException):
    """Raised when a reservation refresh exceeds its wall-clock budget."""
    def __init__(self, budget_seconds: float, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Reservation refresh exceeded its {budget_seconds:g}s budget; partial data was saved",
            code="refresh_timeout",
            status_code=504,
            details=details
        )
