"""
Engine Errors

Structured exceptions raised inside the engine. Scheduled paths catch these
and turn them into result records; they never escape a scheduler tick.
"""

from typing import Any, Dict, Optional


class AntiDipError(Exception):
    """Base engine error with structured details."""
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConditionValidationError(AntiDipError):
    """Rule condition rejected by the safety filter or the parser."""
    def __init__(self, message: str, condition: str = "", position: Optional[int] = None):
        details: Dict[str, Any] = {"condition": condition[:120]}
        if position is not None:
            details["position"] = position
        super().__init__(code="CONDITION_INVALID", message=message, details=details)


class ConditionEvaluationError(AntiDipError):
    """Rule condition failed while being interpreted against a snapshot."""
    def __init__(self, message: str, condition: str = ""):
        super().__init__(
            code="CONDITION_EVALUATION_FAILED",
            message=message,
            details={"condition": condition[:120]},
        )


class PersistenceError(AntiDipError):
    """Key-value port read/write failure."""
    def __init__(self, operation: str, key: str, reason: str):
        super().__init__(
            code="PERSISTENCE_FAILED",
            message=f"{operation} failed for key '{key}': {reason}",
            details={"operation": operation, "key": key},
        )
