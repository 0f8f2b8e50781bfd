"""Named error conditions surfaced by the forecasting and decision engines."""


class AccessDeniedError(PermissionError):
    """Caller role is not allowed to touch forecast models."""

    code = "ACCESS_DENIED"

    def __init__(self, role: str | None, model_version: str):
        self.role = role
        self.model_version = model_version
        super().__init__(f"{self.code}: role={role!r} model_version={model_version}")


class ForecastUnavailableError(RuntimeError):
    """Generator failed or timed out and there is no cached result to fall back to."""

    code = "FORECAST_UNAVAILABLE"


class EngineNotInitializedError(RuntimeError):
    code = "ENGINE_NOT_INITIALIZED"


class ConstraintExpressionError(ValueError):
    code = "INVALID_CONSTRAINT_EXPRESSION"
