from __future__ import annotations


class ResponsePipelineError(Exception):
    pass


class ModelInvocationError(ResponsePipelineError):
    """The model endpoint failed or returned nothing usable at transport level."""

    def __init__(self, message: str, *, request_id: str | None = None):
        super().__init__(message)
        self.request_id = request_id


class ModelTimeoutError(ModelInvocationError):
    pass


class QueueError(ResponsePipelineError):
    pass


class UnknownQueueError(QueueError):

    def __init__(self, queue: str):
        super().__init__(f"unknown queue: {queue}")
        self.queue = queue
