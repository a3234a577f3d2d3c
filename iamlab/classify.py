"""
Classification of gcloud error output into reason codes.
"""

import re
from typing import List, Dict, Optional
from dataclasses import dataclass
from enum import Enum


class Severity(Enum):
    """Failure severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Reason:
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    UNAUTHENTICATED = "unauthenticated"
    NO_PROJECT = "no_project"
    API_DISABLED = "api_disabled"
    QUOTA = "quota_exceeded"
    UNKNOWN = "unknown"


@dataclass
class FailureRule:
    """A rule for recognising a specific gcloud failure."""
    id: str
    name: str
    regexes: List[str]
    message: str
    hint: str
    severity: Severity


class FailureClassifier:
    """Classifies gcloud stderr using regex patterns."""

    def __init__(self):
        self.rules = self._load_default_rules()
        self._compiled = {
            rule.id: [re.compile(rx, re.IGNORECASE) for rx in rule.regexes]
            for rule in self.rules
        }

    def _load_default_rules(self) -> List[FailureRule]:
        """Load default gcloud failure rules."""
        return [
            FailureRule(
                id=Reason.ALREADY_EXISTS,
                name="Resource Already Exists",
                regexes=[
                    r'already exists',
                    r'ALREADY_EXISTS',
                    r'HTTPError 409',
                    r'you already own it',
                ],
                message="Resource already exists",
                hint="Nothing to do; the step is skipped",
                severity=Severity.LOW
            ),
            FailureRule(
                id=Reason.NOT_FOUND,
                name="Resource Not Found",
                regexes=[
                    r'NOT_FOUND',
                    r'was not found',
                    r'HTTPError 404',
                    r'does not exist',
                    r'Policy binding with the specified principal, role, and condition not found',
                ],
                message="Resource not found",
                hint="The resource may already have been removed",
                severity=Severity.LOW
            ),
            FailureRule(
                id=Reason.UNAUTHENTICATED,
                name="Not Authenticated",
                regexes=[
                    r'You do not currently have an active account selected',
                    r'Reauthentication required',
                    r'UNAUTHENTICATED',
                    r'gcloud auth login',
                ],
                message="No active gcloud credentials",
                hint="Run 'gcloud auth login' and retry",
                severity=Severity.CRITICAL
            ),
            FailureRule(
                id=Reason.NO_PROJECT,
                name="No Project Configured",
                regexes=[
                    r'The required property \[project\] is not currently set',
                    r'project property is set to the empty string',
                ],
                message="No project is configured",
                hint="Run 'gcloud config set project PROJECT_ID'",
                severity=Severity.CRITICAL
            ),
            FailureRule(
                id=Reason.API_DISABLED,
                name="API Not Enabled",
                regexes=[
                    r'SERVICE_DISABLED',
                    r'API has not been used in project',
                    r'is not enabled for project',
                ],
                message="A required Google Cloud API is disabled",
                hint="Enable the API with 'gcloud services enable' and retry",
                severity=Severity.HIGH
            ),
            FailureRule(
                id=Reason.QUOTA,
                name="Quota Exceeded",
                regexes=[
                    r'QUOTA_EXCEEDED',
                    r'Quota .* exceeded',
                ],
                message="Project quota exceeded",
                hint="Free up resources or request more quota",
                severity=Severity.HIGH
            ),
            FailureRule(
                id=Reason.PERMISSION_DENIED,
                name="Permission Denied",
                regexes=[
                    r'PERMISSION_DENIED',
                    r'HTTPError 403',
                    r'does not have .* access',
                    r'Required .* permission',
                    r'Insufficient Permission',
                    r'ACCESS_TOKEN_SCOPE_INSUFFICIENT',
                ],
                message="Caller lacks the required permission or scope",
                hint="Check the roles and access scopes of the active identity",
                severity=Severity.MEDIUM
            ),
        ]

    def match(self, text: str) -> Optional[FailureRule]:
        """
        Find the first rule matching the given output.

        Args:
            text: stderr (or combined output) of a gcloud command

        Returns:
            The matching rule, or None
        """
        if not text:
            return None

        for rule in self.rules:
            for pattern in self._compiled[rule.id]:
                if pattern.search(text):
                    return rule
        return None

    def classify(self, text: str) -> str:
        """Return the reason code for the output, or Reason.UNKNOWN."""
        rule = self.match(text)
        return rule.id if rule else Reason.UNKNOWN

    def describe(self, text: str) -> Dict[str, str]:
        rule = self.match(text)
        if rule is None:
            return {
                "reason_code": Reason.UNKNOWN,
                "message": "Unrecognised gcloud failure",
                "hint": "Re-run with --verbose to see the full command output",
                "severity": Severity.MEDIUM.value,
            }
        return {
            "reason_code": rule.id,
            "message": rule.message,
            "hint": rule.hint,
            "severity": rule.severity.value,
        }


_default_classifier = FailureClassifier()


def classify_output(text: str) -> str:
    """Classify output with the shared default classifier."""
    return _default_classifier.classify(text)


def describe_output(text: str) -> Dict[str, str]:
    return _default_classifier.describe(text)
