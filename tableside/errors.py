"""
Error kinds shared by the order and payment services.

Services raise these; the API renders them as `{"error": kind, "detail": message}`
with the matching status code.
"""


class TablesideError(Exception):
    kind = "Internal"
    status_code = 500

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class InvalidInput(TablesideError):
    kind = "InvalidInput"
    status_code = 400


class Unauthenticated(TablesideError):
    kind = "Unauthenticated"
    status_code = 401


class Forbidden(TablesideError):
    kind = "Forbidden"
    status_code = 403


class NotFound(TablesideError):
    kind = "NotFound"
    status_code = 404


class InvalidState(TablesideError):
    """Operation not legal in the entity's current lifecycle state."""
    kind = "InvalidState"
    status_code = 409


class Unavailable(TablesideError):
    """Menu item exists but is not currently orderable."""
    kind = "Unavailable"
    status_code = 422


class ProviderError(TablesideError):
    """Payment provider call failed or timed out; the customer may retry."""
    kind = "ProviderError"
    status_code = 502
