"""Audit store constants and flag vocabulary.

This module defines:
- Compliance flag names emitted by the store and the convenience loggers
- Violation-type flag detection used for audit scoring
- Placeholders used when a sensitive field cannot be decrypted
"""

# =============================================================================
# COMPLIANCE FLAGS
# =============================================================================

FLAG_ENCRYPTION_FAILED = "encryption_failed"
FLAG_GDPR_RELEVANT = "gdpr_relevant"
FLAG_PERSONAL_IDENTIFIER = "personal_identifier"
FLAG_DATA_EXPORT = "data_export"
FLAG_DATA_DELETION = "data_deletion"
FLAG_ASSESSMENT_DATA = "assessment_data"
FLAG_BEHAVIORAL_TRACKING = "behavioral_tracking"
FLAG_DATA_PROCESSING = "data_processing"
FLAG_FAILED_AUTHENTICATION = "failed_authentication"
FLAG_COMPLIANCE_VIOLATION = "compliance_violation"
FLAG_SECURITY_VULNERABILITY = "security_vulnerability"

VIOLATION_FLAG_SUFFIXES: tuple[str, ...] = ("_violation", "_vulnerability")
"""Flags ending in one of these suffixes mark a detected problem."""


def is_violation_flag(flag: str) -> bool:
    """Check whether a compliance flag marks a detected problem.

    Args:
        flag: Compliance flag name

    Returns:
        True for *_violation / *_vulnerability flags and encryption_failed.
    """
    return flag == FLAG_ENCRYPTION_FAILED or flag.endswith(VIOLATION_FLAG_SUFFIXES)


# =============================================================================
# ENCRYPTION
# =============================================================================

DECRYPTION_FAILED_PLACEHOLDER = "[decryption_failed]"
"""Returned in place of a sensitive field whose ciphertext cannot be read."""

REDACTED_VALUE = "****"
"""Stored in place of a non-string sensitive field that failed encryption."""
