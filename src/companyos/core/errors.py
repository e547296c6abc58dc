"""
CompanyOS error taxonomy.

None of these are process-fatal: the bus and router degrade a bad event into
a dropped delivery, and the classifier degrades a bad change into a
conservative verdict.
"""


class CompanyOSError(Exception):
    """Base class for all CompanyOS errors."""


class SubscriberError(CompanyOSError):
    """A bus subscriber raised or its task failed.

    Logged by the event bus and never surfaced to the publisher.
    """

    def __init__(self, topic: str, subscriber: str, cause: BaseException):
        self.topic = topic
        self.subscriber = subscriber
        self.cause = cause
        super().__init__(f"Subscriber {subscriber} failed on {topic}: {cause}")


class RoutingError(CompanyOSError):
    """An event or room key lacks a valid organization scope."""


class AuthorizationError(CompanyOSError):
    """A connection or subscription request is not allowed.

    Attributes:
        status_code: HTTP status the transport layer should answer with
    """

    def __init__(self, message: str, status_code: int = 401):
        self.status_code = status_code
        super().__init__(message)


class ClassificationInputError(CompanyOSError):
    """The classifier was handed something that is not a change at all."""


class TaskStateError(CompanyOSError):
    """An agent task lifecycle step was requested from the wrong state."""
