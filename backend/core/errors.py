"""
Error taxonomy for the decision pipeline.

Only ``PersistenceError`` aborts a whole invocation. Lock conflicts are typed
results (see ``jobs.registry``), and chunk/rule failures are captured as data
in the run summary.
"""


class PipelineError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500
    code = "pipeline_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PipelineError):
    """Missing or malformed input, e.g. no tenant_id."""

    status_code = 400
    code = "validation_error"


class Unauthorized(PipelineError):
    """No credentials, or a token that does not verify."""

    status_code = 401
    code = "unauthorized"


class AccessDenied(PipelineError):
    """Caller tried to touch another tenant's rows."""

    status_code = 403
    code = "access_denied"


class NotFound(PipelineError):
    status_code = 404
    code = "not_found"


class InvalidTransition(PipelineError):
    """A lifecycle transition that is not allowed from the current status."""

    status_code = 400
    code = "invalid_transition"


class InvalidCardTransition(InvalidTransition):
    pass


class PersistenceError(PipelineError):
    """The store is unavailable or rejected a write unexpectedly."""

    status_code = 500
    code = "persistence_error"


class FormulaError(Exception):
    """A rule definition that cannot be compiled or evaluated."""
