"""
Failure taxonomy for the orchestration core.

Credential-level failures are absorbed inside FailoverExecutor until every
key has been tried; everything else reaches the caller as one of these.
"""

from typing import Optional


class ProviderError(Exception):
    """
    A provider call failed. status_code is the HTTP status, or the in-band
    `code` for providers that answer 200 with an error envelope.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PipelineError(Exception):
    """Base class for all typed pipeline failures."""


class NoCredentialsAvailable(PipelineError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"No active {service} API keys available")


class AllCredentialsExhausted(PipelineError):
    def __init__(self, service: str, last_error: Optional[BaseException] = None):
        self.service = service
        self.last_error = last_error
        detail = str(last_error) if last_error else "Unknown error"
        super().__init__(f"All {service} API keys failed. Last error: {detail}")


class AnalysisParseError(PipelineError):
    pass


class InvalidAnalysis(PipelineError):
    pass


class PersistenceError(PipelineError):
    pass


class InsufficientCredits(PipelineError):
    def __init__(self, required: int, balance: Optional[int] = None):
        self.required = required
        self.balance = balance
        msg = f"Insufficient credits. You need at least {required} credits to start a project."
        if balance is not None:
            msg += f" Current balance: {balance}."
        super().__init__(msg)


class MediaRelocationFailed(PipelineError):
    pass


class ProviderTaskFailed(PipelineError):
    pass


class InvalidTransition(PipelineError):
    pass


class NotFound(PipelineError):
    pass


CREDENTIAL_ERRORS = (NoCredentialsAvailable, AllCredentialsExhausted)
