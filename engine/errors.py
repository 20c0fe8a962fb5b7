from typing import Any, Dict, List


class DuplicateOrMissingNameError(ValueError):
    """Raised when a merged scope list holds a blank or repeated scopeIdentifier."""

    def __init__(self, scope_identifier: str):
        self.scope_identifier = scope_identifier
        super().__init__(
            f'Duplicate or missing scopeIdentifier "{scope_identifier or "(empty)"}" after merge. '
            "Please ensure unique, non-empty names."
        )


class AllocationValidationError(ValueError):
    """Raised when a write would leave a shared scope's allocations off 100%."""

    def __init__(self, result: Any):
        self.result = result
        identifiers = ", ".join(e.scope_identifier for e in result.errors)
        super().__init__(f"Allocation validation failed for: {identifiers}")

    def to_payload(self) -> Dict[str, Any]:
        return self.result.to_error_payload()


class AllocationPatchError(ValueError):
    """Raised when an allocation-only patch is malformed or does not sum to 100%."""

    def __init__(self, errors: List[Dict[str, Any]]):
        self.errors = errors
        super().__init__(f"{len(errors)} allocation patch error(s)")


class NotFoundError(ValueError):
    """Raised when a flowchart, node or scope referenced by an edit does not exist."""
