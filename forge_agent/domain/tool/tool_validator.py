from typing import Any, Dict, List
import jsonschema
from pydantic import BaseModel, Field

from forge_agent.domain.redaction import EMAIL_PATTERN, PHONE_PATTERN
from forge_agent.domain.tool.tool_registry import ToolDefinition

MAX_STRING_LENGTH = 500


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class SecurityValidator:
    @staticmethod
    def check_parameters(parameters: Dict[str, Any]) -> List[str]:
        """Reject oversized strings and personal contact details in tool arguments"""
        issues = []
        for key, value in parameters.items():
            if not isinstance(value, str):
                continue
            if len(value) > MAX_STRING_LENGTH:
                issues.append(f"Parameter '{key}' exceeds {MAX_STRING_LENGTH} characters")
            if EMAIL_PATTERN.search(value) or PHONE_PATTERN.search(value):
                issues.append(f"Parameter '{key}' contains contact details")
        return issues


# Parameter & security validation
class ToolParameterValidator:
    @staticmethod
    def validate_tool_call(tool: ToolDefinition, parameters: Dict[str, Any]) -> ValidationResult:
        try:
            jsonschema.validate(parameters, tool.parameters)
        except jsonschema.ValidationError as e:
            return ValidationResult(is_valid=False, errors=[f"Schema validation failed: {e.message}"])

        security_issues = SecurityValidator.check_parameters(parameters)
        if security_issues:
            return ValidationResult(is_valid=False, errors=security_issues)

        return ValidationResult(is_valid=True)
