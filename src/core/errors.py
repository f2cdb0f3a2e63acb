"""Error taxonomy of the quote lifecycle.

Raised inside the lifecycle modules and converted into result dicts at the
operation boundary (see quote_ledger._run). `status` is the HTTP status
the API layer answers with.
"""


class QuoteError(Exception):
    code = "error"
    status = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(QuoteError):
    code = "not_found"
    status = 404


class Conflict(QuoteError):
    code = "conflict"
    status = 409


class ValidationError(QuoteError):
    code = "validation_error"
    status = 400


class InvalidState(QuoteError):
    code = "invalid_state"
    status = 409


class Forbidden(QuoteError):
    code = "forbidden"
    status = 403


class RenderFailure(QuoteError):
    code = "render_failure"
    status = 500


class DependencyFailure(QuoteError):
    code = "dependency_failure"
    status = 500
