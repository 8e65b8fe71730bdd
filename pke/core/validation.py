"""Advisory structural validation for parsed invocation results."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ValidationError

LOGGER = logging.getLogger(__name__)


class ValidationFailure(ValueError):
    """Raised by strict validators when a check fails."""

    def __init__(self, message: str, errors: List[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


@dataclass
class ValidationResult:
    """Result of a validation check."""

    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    data: Any = None

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def raise_if_invalid(self) -> None:
        """Raise ValidationFailure if validation failed."""
        if not self.valid:
            raise ValidationFailure(f"Validation failed: {'; '.join(self.errors)}", self.errors)

    def as_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


class ValidationFramework:
    """Shared dict/model checks with optional strict mode."""

    def __init__(self, *, strict: bool = False):
        """Initialize validation framework.

        Args:
            strict: If True, raise ValidationFailure on validation failure
        """
        self.strict = strict

    def _finish(self, result: ValidationResult, label: str) -> ValidationResult:
        if not result.valid:
            LOGGER.warning("%s validation failed: %s", label, result.errors)
        elif result.has_warnings:
            LOGGER.info("%s validation warnings: %s", label, result.warnings)
        if self.strict and not result.valid:
            result.raise_if_invalid()
        return result

    def validate_dict_structure(self, data: Any, required_keys: List[str], optional_keys: Optional[List[str]] = None) -> ValidationResult:
        """Validate dictionary structure and keys."""
        errors: List[str] = []
        warnings: List[str] = []

        if not isinstance(data, Mapping):
            errors.append(f"Expected dict, got {type(data).__name__}")
            return self._finish(ValidationResult(valid=False, errors=errors, warnings=warnings), "Dict structure")

        missing = [key for key in required_keys if key not in data]
        if missing:
            errors.append(f"Missing required keys: {missing}")

        if optional_keys is not None:
            allowed = set(required_keys) | set(optional_keys)
            unknown = [key for key in data if key not in allowed]
            if unknown:
                warnings.append(f"Unknown keys (will be ignored): {unknown}")

        null_required = [key for key in required_keys if key in data and data[key] is None]
        if null_required:
            errors.append(f"Required keys with null values: {null_required}")

        result = ValidationResult(valid=len(errors) == 0, errors=errors, warnings=warnings, data=data)
        return self._finish(result, "Dict structure")

    def validate_pydantic_model(self, data: Dict[str, Any], model_class: Type[BaseModel]) -> ValidationResult:
        """Validate data against a Pydantic model."""
        errors: List[str] = []
        validated = None
        try:
            validated = model_class.model_validate(data)
        except ValidationError as exc:
            for error in exc.errors():
                location = ".".join(str(loc) for loc in error["loc"])
                errors.append(f"{location}: {error['msg']}")
        result = ValidationResult(valid=not errors, errors=errors, warnings=[], data=validated)
        return self._finish(result, model_class.__name__)


class InvocationValidator(ValidationFramework):
    """Per-invocation checks that flag missing or thin output without blocking accept."""

    def validate(self, invocation: int, result: Mapping[str, Any]) -> ValidationResult:
        checks: Dict[int, Callable[[Mapping[str, Any]], ValidationResult]] = {
            1: self.validate_description,
            2: self.validate_objectives,
            3: self.validate_structure,
            4: self.validate_full_build,
            5: self.validate_template_mapping,
        }
        check = checks.get(invocation)
        if check is None:
            return ValidationResult(valid=False, errors=[f"Unknown invocation {invocation}"])
        return check(result)

    def validate_description(self, result: Mapping[str, Any]) -> ValidationResult:
        base = self.validate_dict_structure(result, ["description"])
        errors, warnings = list(base.errors), list(base.warnings)
        description = str(result.get("description") or "") if isinstance(result, Mapping) else ""
        if base.valid and not description.strip():
            errors.append("Description is empty")
        elif description and len(description.split()) < 40:
            warnings.append("Description is shorter than the expected 2-4 paragraphs")
        if isinstance(result, Mapping) and not result.get("suggestions"):
            warnings.append("No improvement suggestions returned")
        return self._finish(ValidationResult(valid=not errors, errors=errors, warnings=warnings, data=result), "Invocation 1")

    def validate_objectives(self, result: Mapping[str, Any]) -> ValidationResult:
        base = self.validate_dict_structure(result, ["learning_objectives"])
        errors, warnings = list(base.errors), list(base.warnings)
        objectives = result.get("learning_objectives") if isinstance(result, Mapping) else None
        if base.valid:
            if not objectives:
                errors.append("No learning objectives returned")
            else:
                for index, objective in enumerate(objectives, start=1):
                    text = objective.get("text") if isinstance(objective, Mapping) else None
                    if not text:
                        errors.append(f"Objective {index} has no text")
                    if isinstance(objective, Mapping) and not objective.get("bloom_level"):
                        warnings.append(f"Objective {index} is missing a Bloom level")
        return self._finish(ValidationResult(valid=not errors, errors=errors, warnings=warnings, data=result), "Invocation 2")

    def validate_structure(self, result: Mapping[str, Any]) -> ValidationResult:
        base = self.validate_dict_structure(result, ["topics"])
        errors, warnings = list(base.errors), list(base.warnings)
        topics = result.get("topics") if isinstance(result, Mapping) else None
        if base.valid:
            if not topics:
                errors.append("No topics returned")
            else:
                for index, topic in enumerate(topics, start=1):
                    subtopics = topic.get("subtopics") if isinstance(topic, Mapping) else None
                    if not subtopics:
                        warnings.append(f"Topic {index} has no subtopics")
                        continue
                    for subtopic in subtopics:
                        if isinstance(subtopic, Mapping) and not subtopic.get("lessons"):
                            warnings.append(f"Subtopic '{subtopic.get('title', '')}' has no lessons")
        return self._finish(ValidationResult(valid=not errors, errors=errors, warnings=warnings, data=result), "Invocation 3")

    def validate_full_build(self, result: Mapping[str, Any]) -> ValidationResult:
        structure = self.validate_structure(result)
        errors, warnings = list(structure.errors), list(structure.warnings)
        if isinstance(result, Mapping):
            if not result.get("assessments"):
                warnings.append("No assessments returned")
            if not result.get("activities"):
                warnings.append("No activities returned")
        return self._finish(ValidationResult(valid=not errors, errors=errors, warnings=warnings, data=result), "Invocation 4")

    def validate_template_mapping(self, result: Mapping[str, Any]) -> ValidationResult:
        base = self.validate_dict_structure(
            result,
            ["fields", "mappings"],
            ["analysis", "automation_profile", "sources", "raw_content", "parse_error"],
        )
        errors, warnings = list(base.errors), list(base.warnings)
        if base.valid and not result.get("fields"):
            warnings.append("No template fields detected")
        return self._finish(ValidationResult(valid=not errors, errors=errors, warnings=warnings, data=result), "Invocation 5")


__all__ = [
    "InvocationValidator",
    "ValidationFailure",
    "ValidationFramework",
    "ValidationResult",
]
