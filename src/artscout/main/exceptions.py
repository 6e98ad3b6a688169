class ArtscoutException(Exception):
    pass


class ConfigurationError(ArtscoutException):
    """Raised synchronously at call time; nothing is enqueued."""


class UnknownJobTypeError(ConfigurationError):
    def __init__(self, job_type: object):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


class InvalidCronExpressionError(ConfigurationError):
    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression {expression!r}: {reason}")


class MalformedIdentifierError(ArtscoutException):
    pass


class NotReadyException(ArtscoutException):
    pass


class PipelineError(ArtscoutException):
    """A search pipeline stage failed; the message is recorded on the execution."""


class ProfileNotFoundError(PipelineError):
    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__("Profile not found")


class SearchFailedError(PipelineError):
    def __init__(self, reason: str | None):
        self.reason = reason
        super().__init__(f"Search failed: {reason}")


class SearchJobNotFoundError(PipelineError):
    def __init__(self, search_job_id: str):
        self.search_job_id = search_job_id
        super().__init__("Search job not found")


class SearchTimeoutError(PipelineError):
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__("Search timeout")


class ExecutionCancelledError(PipelineError):
    """The execution left ``running`` while the pipeline was still working on it."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} is no longer running")


class JobHandlerError(ArtscoutException):
    """A job handler could not finish; the attempt is failed and may be retried."""
