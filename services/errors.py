"""
Exceptions raised by the automation rule service layer.

Each carries the HTTP status the API layer should answer with, so routes can
translate them without a per-exception mapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class FieldError:
    """A single problem with a rule definition."""
    field: str
    message: str


class AutomationRuleError(Exception):
    """Base class for automation rule failures."""
    status_code = 400


class RuleValidationError(AutomationRuleError):
    """Raised when a rule definition or request body is malformed."""

    def __init__(self, errors: List[FieldError]):
        self.errors = list(errors)
        message = self.errors[0].message if self.errors else "Invalid automation rule"
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str) -> "RuleValidationError":
        return cls([FieldError(field=field, message=message)])


class RuleNotFoundError(AutomationRuleError):
    """Raised when a rule id does not exist."""
    status_code = 404

    def __init__(self, rule_id):
        self.rule_id = rule_id
        super().__init__(f"Automation rule not found with id of {rule_id}")


class InactiveRuleError(AutomationRuleError):
    """Raised when execute is attempted on a deactivated rule."""

    def __init__(self, rule_id, name: Optional[str] = None):
        self.rule_id = rule_id
        self.name = name
        super().__init__("Cannot execute inactive automation rule")


class RuleExecutionError(AutomationRuleError):
    """Raised after a failed execution has been recorded in the rule analytics."""
    status_code = 500
