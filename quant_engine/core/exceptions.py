from typing import Any


class QuantEngineError(Exception):
    def __init__(self, detail: Any = None) -> None:
        self.detail = detail
        super().__init__(detail)


class ValidationError(QuantEngineError):
    def __init__(self, detail: str = "Validation error"):
        super().__init__(detail=detail)


class NotFoundError(QuantEngineError):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(detail=detail)


class ConflictError(QuantEngineError):
    def __init__(self, detail: str = "Conflict"):
        super().__init__(detail=detail)


class OrderValidationError(ValidationError):
    def __init__(self, detail: str = "Invalid order"):
        super().__init__(detail=detail)


class PricingInputError(ValidationError):
    def __init__(self, detail: str = "Invalid pricing input"):
        super().__init__(detail=detail)


class RuleEvaluationError(QuantEngineError):
    def __init__(self, rule_id: str, detail: str = "Rule evaluation failed"):
        self.rule_id = rule_id
        super().__init__(detail=f"{rule_id}: {detail}")
