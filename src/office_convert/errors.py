class ConversionError(Exception):
    """Base exception for conversion and environment preparation failures.

    Every subclass carries a machine-readable ``kind`` and the HTTP status
    used when the error crosses the service boundary.
    """

    kind = "internal"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        engine_code: int | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.engine_code = engine_code
        self.diagnostic = diagnostic

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.kind,
            "message": self.message,
            "reason": self.reason,
            "engine_code": self.engine_code,
            "diagnostic": self.diagnostic,
        }


class StartupFatalError(ConversionError):
    kind = "startup_fatal"
    status_code = 503


class ValidationError(ConversionError):
    kind = "validation"
    status_code = 400


class ResourceLimitError(ConversionError):
    kind = "resource_limit"
    status_code = 413


class EngineTimeoutError(ConversionError):
    kind = "timeout"
    status_code = 504


class EngineError(ConversionError):
    kind = "engine"
    status_code = 422


class InternalError(ConversionError):
    kind = "internal"
    status_code = 500


class ConversionCancelledError(ConversionError):
    kind = "cancelled"
    status_code = 499
