from typing import List, Optional


class ConfigError(RuntimeError):
    """Raised when the service configuration cannot be loaded."""


class RuleValidationError(ValueError):
    """A rule document failed validation. Carries every problem found."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid rule document")


class ConditionSyntaxError(ValueError):
    pass


class EvaluationError(RuntimeError):
    """Evaluating one rule against one log failed."""

    def __init__(self, rule_id: str, message: str):
        self.rule_id = rule_id
        super().__init__(f"rule {rule_id}: {message}")


class DispatchError(RuntimeError):
    """Enqueueing or delivering a notification failed."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        self.job_id = job_id
        super().__init__(message)
