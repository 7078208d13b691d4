from typing import Any, Dict, Optional


class ExportError(Exception):
    """Base error rendered to clients as ``{"error": ..., "details": ...}``."""

    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, details: Optional[str] = None, *, error: Optional[str] = None) -> None:
        super().__init__(details or error or self.error)
        self.details = details
        if error is not None:
            self.error = error

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error}
        if self.details:
            payload["details"] = self.details
        return payload


class AuthError(ExportError):
    status_code = 401
    error = "Invalid API key"


class ValidationError(ExportError):
    status_code = 400
    error = "No video file provided"


class UploadTooLargeError(ExportError):
    status_code = 413
    error = "File too large"


class ServerBusyError(ExportError):
    status_code = 503
    error = "Server busy"


class JobNotFoundError(ExportError):
    status_code = 404
    error = "Conversion not found"


class EngineError(ExportError):
    error = "Conversion failed"


class EngineSpawnError(EngineError):
    pass


class EngineExitError(EngineError):
    def __init__(self, exit_code: Optional[int], details: Optional[str] = None) -> None:
        super().__init__(details or f"FFmpeg exited with code {exit_code}")
        self.exit_code = exit_code


class EngineTimeoutError(EngineExitError):
    def __init__(self, timeout: float) -> None:
        super().__init__(None, f"FFmpeg did not finish within {timeout:g} seconds")
        self.timeout = timeout


class StreamDeliveryError(ExportError):
    error = "Conversion failed"
