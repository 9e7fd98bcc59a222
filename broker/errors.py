from typing import Any, Dict, List, Optional


class BrokerError(Exception):
    status_code = 500
    code = "broker_error"

    def __init__(self, message: str, *, backend: Optional[str] = None, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.backend:
            data["backend"] = self.backend
        if self.step:
            data["step"] = self.step
        return data


class ProbeFailure(BrokerError):
    status_code = 503
    code = "probe_failure"


class NoProviderForCapability(BrokerError):
    status_code = 503
    code = "no_provider"

    def __init__(self, capability: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"No available provider for capability {capability}")
        self.capability = capability

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["capability"] = self.capability
        return data


class ResourceExhausted(BrokerError):
    status_code = 507
    code = "resource_exhausted"


class InvocationFailure(BrokerError):
    status_code = 502
    code = "invocation_failure"


class UnknownModel(BrokerError):
    status_code = 404
    code = "unknown_model"


class UnsupportedOperation(BrokerError):
    status_code = 400
    code = "unsupported_operation"


class FlowValidationError(BrokerError):
    status_code = 422
    code = "validation_error"

    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors) or "Flow is invalid")
        self.errors = list(errors)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class StepFailure(BrokerError):
    code = "step_failure"

    def __init__(self, step: str, cause: Exception) -> None:
        detail = getattr(cause, "message", None) or str(cause) or "Unknown error"
        super().__init__(
            f'Step "{step}" failed: {detail}',
            backend=getattr(cause, "backend", None),
            step=step,
        )
        self.cause = cause


class FlowExecutionLimitExceeded(BrokerError):
    status_code = 508
    code = "flow_execution_limit"

    def __init__(self, limit: int, step: Optional[str] = None) -> None:
        super().__init__(f"Flow exceeded {limit} step executions", step=step)
        self.limit = limit
