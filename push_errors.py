#!/usr/bin/env python3
"""
Push delivery error classification.

Every provider error code maps to a handling rule. Unrecognized codes fall
back to the ``Unknown`` rule, so ``classify`` never fails.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ErrorSeverity(str, Enum):
    LOW = "low"            # single token problems
    MEDIUM = "medium"      # service degradation
    HIGH = "high"          # provider or configuration failure
    CRITICAL = "critical"


class ErrorAction(str, Enum):
    DELETE_TOKEN = "delete_token"
    DEACTIVATE_TOKEN = "deactivate_token"
    RETRY_LATER = "retry_later"
    INVESTIGATE = "investigate"


@dataclass(frozen=True)
class ErrorRule:
    error_type: str
    severity: ErrorSeverity
    retryable: bool
    max_retries: int
    backoff_base_ms: int
    action: ErrorAction

    @property
    def hands_off_to_retry_queue(self) -> bool:
        """Whether a failure with this rule goes to the retry queue."""
        if self.action == ErrorAction.RETRY_LATER:
            return True
        if self.action == ErrorAction.INVESTIGATE:
            return self.retryable or self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL)
        return False


UNKNOWN_ERROR = "Unknown"
NETWORK_ERROR = "NetworkError"

ERROR_RULES: Dict[str, ErrorRule] = {
    "DeviceNotRegistered": ErrorRule("DeviceNotRegistered", ErrorSeverity.LOW, False, 0, 0, ErrorAction.DELETE_TOKEN),
    "InvalidCredentials": ErrorRule("InvalidCredentials", ErrorSeverity.LOW, False, 0, 0, ErrorAction.DEACTIVATE_TOKEN),
    "MessageTooBig": ErrorRule("MessageTooBig", ErrorSeverity.MEDIUM, False, 0, 0, ErrorAction.INVESTIGATE),
    "MessageRateExceeded": ErrorRule("MessageRateExceeded", ErrorSeverity.MEDIUM, True, 3, 30_000, ErrorAction.RETRY_LATER),
    "InternalError": ErrorRule("InternalError", ErrorSeverity.HIGH, True, 2, 60_000, ErrorAction.RETRY_LATER),
    NETWORK_ERROR: ErrorRule(NETWORK_ERROR, ErrorSeverity.MEDIUM, True, 3, 5_000, ErrorAction.RETRY_LATER),
    "MismatchSenderId": ErrorRule("MismatchSenderId", ErrorSeverity.HIGH, False, 0, 0, ErrorAction.INVESTIGATE),
    UNKNOWN_ERROR: ErrorRule(UNKNOWN_ERROR, ErrorSeverity.MEDIUM, True, 1, 10_000, ErrorAction.INVESTIGATE),
}

# Provider codes that share a rule with another code
ERROR_ALIASES: Dict[str, str] = {
    "ServiceUnavailable": "InternalError",
}


def classify(error_code: Optional[str]) -> ErrorRule:
    """Return the handling rule for a provider error code."""
    if not error_code:
        return ERROR_RULES[UNKNOWN_ERROR]
    code = ERROR_ALIASES.get(error_code, error_code)
    return ERROR_RULES.get(code, ERROR_RULES[UNKNOWN_ERROR])
