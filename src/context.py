"""RequestContext: carries owner and correlation info through a request."""

import uuid
from dataclasses import dataclass, field


@dataclass
class RequestContext:
    """Context for one HTTP request, passed explicitly into every operation.

    Attributes:
        user_id: Owner identifier resolved by the auth collaborator. Every
            memory, conversation and message row is scoped to it.
        request_id: Correlation ID for log lines. Generated when omitted.
    """

    user_id: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not self.user_id:
            msg = "RequestContext requires a user_id"
            raise ValueError(msg)
