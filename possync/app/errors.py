from typing import Optional


class OrderNotFound(LookupError):
    def __init__(self, frontend_id: str):
        super().__init__(f'order with frontend id "{frontend_id}" not found in local database')
        self.frontend_id = frontend_id


class IdentifierExhausted(RuntimeError):
    def __init__(self, max_attempts: int):
        super().__init__(f"failed to generate unique frontend id after {max_attempts} attempts")
        self.max_attempts = max_attempts


class RemoteOrderError(Exception):
    """
    Any failure talking to the remote order service: transport errors, non-2xx
    responses, or a response body that does not parse as an order.
    The reconciler treats all of them as retryable.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
