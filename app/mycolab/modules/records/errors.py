"""
Errors raised by the record versioning services.

Every error is raised before anything is written, so callers can surface the
message as-is and let the user correct the request.
"""

from __future__ import annotations


class RecordError(ValueError):
    status_code = 400

    @property
    def code(self) -> str:
        return type(self).__name__


class RecordGroupNotFound(RecordError):
    status_code = 404

    def __init__(self, record_group_id: str):
        super().__init__(f"Record {record_group_id} not found.")
        self.record_group_id = record_group_id


class VersionNotFound(RecordError):
    status_code = 404

    def __init__(self, record_group_id: str, version_id: str):
        super().__init__(f"Version {version_id} does not belong to record {record_group_id}.")
        self.record_group_id = record_group_id
        self.version_id = version_id


class MissingReason(RecordError):
    def __init__(self, message: str = "Please provide a reason for this amendment."):
        super().__init__(message)


class NoOpAmendment(RecordError):
    def __init__(self, message: str = "Please make at least one change."):
        super().__init__(message)


class InvalidAmendmentType(RecordError):
    def __init__(self, amendment_type: str):
        super().__init__(f"Invalid amendment type: {amendment_type!r}.")
        self.amendment_type = amendment_type


class InvalidFieldValue(RecordError):
    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class RecordArchived(RecordError):
    status_code = 409

    def __init__(self, record_group_id: str):
        super().__init__(f"Record {record_group_id} is archived and can no longer be amended.")
        self.record_group_id = record_group_id


class ConcurrentModification(RecordError):
    status_code = 409

    def __init__(self, record_group_id: str, message: str | None = None):
        super().__init__(
            message or f"Record {record_group_id} was amended by someone else. Reload and try again."
        )
        self.record_group_id = record_group_id


class InvalidOutcomeCode(RecordError):
    pass


class CategoryMismatch(RecordError):
    def __init__(self, outcome_code: str, expected: str, given: str):
        super().__init__(
            f"Outcome {outcome_code!r} is in category {expected!r}, not {given!r}."
        )
        self.outcome_code = outcome_code


class IrrelevantContaminationDetails(RecordError):
    def __init__(self, outcome_code: str):
        super().__init__(
            f"Contamination details only apply to contamination outcomes, not {outcome_code!r}."
        )
        self.outcome_code = outcome_code


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to UPDATE or DELETE an append-only row."""

    status_code = 500
