# errors.py
# Every failure the API can report. Handlers in main.py turn these into
# {"error": message} bodies with the class's status_code.


class RenderApiError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(RenderApiError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ValidationError(RenderApiError):
    status_code = 400


class NotFound(RenderApiError):
    status_code = 404


class Conflict(RenderApiError):
    status_code = 409


class InvalidTransition(RenderApiError):
    # Internal invariant violation. Callers validate before reaching the store.
    status_code = 500
