# src/sfdc_bulk/core/exceptions.py
from typing import Optional


class SalesforceError(Exception):
    """Base exception for Salesforce client errors, with an optional error code."""
    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)


class ValidationError(SalesforceError):
    """Caller-supplied records, sizes or fields are invalid. Raised before any request is sent."""
    pass


class RemoteError(SalesforceError):
    """
    Salesforce answered with a non-2xx status, or the request never completed.
    `stage` names the pipeline step that failed (create, upload, close, poll, results, ...).
    """
    def __init__(self, stage: str, status_code: Optional[int], body: str = "", message: Optional[str] = None):
        self.stage = stage
        self.status_code = status_code
        self.body = body
        if message is None:
            message = f"Salesforce {stage} request failed with status {status_code}: {body}"
        super().__init__(message, error_code=str(status_code) if status_code is not None else None)


class AuthenticationError(RemoteError):
    """The authentication collaborator could not provide a usable token, or Salesforce rejected it during `stage`."""
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "", stage: str = "auth"):
        super().__init__(stage, status_code, body, message=message)


class CancellationError(SalesforceError):
    """A poll loop or result iteration was cancelled or timed out."""
    pass


class BulkJobFailedError(SalesforceError):
    """A bulk job reached the Aborted or Failed state."""
    def __init__(self, job_id: str, state: str, message: Optional[str] = None):
        self.job_id = job_id
        self.state = state
        self.server_message = message or ""
        super().__init__(
            f"Bulk job {job_id} ended in state {state}: {self.server_message or 'no error message'}",
            error_code=state,
        )


class FileParsingError(SalesforceError):
    """Custom exception for file parsing errors."""
    pass
