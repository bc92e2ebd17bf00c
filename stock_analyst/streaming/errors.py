"""Relay-level exceptions.

Every failure the relay converts into a downstream error frame derives from
RelayError, so the HTTP layer and the relay can catch one base class.
"""


class RelayError(Exception):
    """Base class.

    Attributes:
        code: machine readable code, e.g. "UPSTREAM_HTTP".
        message: human readable message, sent to the client as-is.
        http_status: status to use when the error is mapped onto a plain HTTP response.
    """

    def __init__(self, code: str, message: str, http_status: int = 502):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


class UpstreamHTTPError(RelayError):
    """The LLM endpoint answered with a status >= 400."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(code="UPSTREAM_HTTP", message=f"API error: {status_code} - {body}")


class UpstreamTransportError(RelayError):
    """Connection-level failure: DNS, refused/reset connection, timeout."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(code="UPSTREAM_TRANSPORT", message=f"Network error: {detail}")


class ValidationError(RelayError):
    """A relay entry point was called without its required fields."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            code="VALIDATION",
            message=f"Missing required parameters: {', '.join(missing)}",
            http_status=400,
        )
