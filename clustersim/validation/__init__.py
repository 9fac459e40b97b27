"""Command matching, validation inference and scenario step validation."""

from clustersim.validation.command_matcher import (
    is_invalid_command,
    matched_expected,
    matches_expected,
    normalize_command,
    validate_command_executed,
)
from clustersim.validation.inference import (
    InferredValidation,
    ValidationOverride,
    evaluate_field_check,
    infer_validation,
    merge_with_override,
)
from clustersim.validation.scenario_validator import (
    ScenarioValidator,
    StepResult,
    ValidationResult,
    check_expectations,
)

__all__ = [
    "InferredValidation",
    "ScenarioValidator",
    "StepResult",
    "ValidationOverride",
    "ValidationResult",
    "check_expectations",
    "evaluate_field_check",
    "infer_validation",
    "is_invalid_command",
    "matched_expected",
    "matches_expected",
    "merge_with_override",
    "normalize_command",
    "validate_command_executed",
]
