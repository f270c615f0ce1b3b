"""Error taxonomy shared by ingestion and turn processing."""

from typing import Optional


class RelayError(Exception):
    """Base class for errors raised by the relay pipeline."""


class ParseError(RelayError):
    """No identity-bearing payload shape was found in the request body."""


class IdentityError(RelayError):
    """A payload shape matched but no direct-chat sender identity could be extracted."""


class DependencyError(RelayError):
    """An external collaborator (store, engine, gateway) failed."""


class StoreError(DependencyError):
    pass


class EngineError(DependencyError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class GatewayError(DependencyError):
    def __init__(
        self,
        message: str,
        *,
        route: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.route = route
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class RunTimeoutError(DependencyError):
    def __init__(self, run_id: str, attempts: int, last_status: Optional[str] = None):
        self.run_id = run_id
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(f"Run {run_id} not finished after {attempts} polls (last status: {last_status})")
