"""
Defines custom exceptions used throughout the service.

These exceptions allow for more specific error handling than built-in exceptions.
"""

class JobNotFoundError(LookupError):
    """Raised when a job id is not in the store."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id

class InvalidJobStateError(Exception):
    """Raised when an operation is not valid for the job's current status."""

    def __init__(self, job_id: str, status: str, operation: str):
        super().__init__(f"Cannot {operation} job {job_id} while it is {status}")
        self.job_id = job_id
        self.status = status
        self.operation = operation

class InvalidJobRequestError(ValueError):
    """Raised when a submission carries an unsupported format or quality."""
    pass

class ArchiveError(Exception):
    """Raised when the external archiver fails to bundle a playlist."""
    pass

class RangeNotSatisfiableError(ValueError):
    """Raised when a requested byte range lies outside the artifact."""
    pass

class DownloadCancelledError(Exception):
    """Custom exception for cancelled downloads."""
    pass

class URLExtractionError(Exception):
    """Custom exception for URL processing failures."""
    pass
