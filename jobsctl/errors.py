"""Error taxonomy for scheduling and processing jobs.

A lost claim (another process already moved the row out of ``pending``) is
not an error: the repository reports it as ``False`` and the scheduler skips
the job silently.
"""


class JobsError(Exception):
    pass


class InvalidJobType(JobsError, ValueError):
    def __init__(self, job_type):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type!r}")


class InvalidPayload(JobsError, ValueError):
    pass


class StoreError(JobsError, RuntimeError):
    pass


class StoreWriteError(StoreError):
    pass


class HandlerError(JobsError, RuntimeError):
    pass


class HandlerTimeout(HandlerError):
    def __init__(self, job_type, seconds):
        self.seconds = seconds
        super().__init__(f"Handler for {job_type} timed out after {seconds}s")
