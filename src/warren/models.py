from enum import Enum
from typing import Any, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr

MIN_PRIORITY = 0
MAX_PRIORITY = 255


class PublishResult(Enum):
    """
    Outcome of a single publish attempt.

    PENDING means the broker has not answered (confirm wait timed out).
    Only REJECTED is falsy, so `if publisher.publish(...)` reads naturally.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"

    def __bool__(self) -> bool:
        return self is not PublishResult.REJECTED


class Continuation(Enum):
    """Returned from a consumer callback to tell the delivery loop what to do next."""

    CONTINUE = "continue"
    STOP = "stop"


class QueueInfo(NamedTuple):
    """Snapshot of a queue taken at declare time. Never refreshed implicitly."""

    queue: str
    message_count: int
    consumer_count: int


class Message(BaseModel):
    """
    Immutable message body plus AMQP property bag.

    Property names follow amqpstorm (`headers`, `delivery_mode`, `reply_to`...).
    Builder methods never mutate, they return a modified copy.
    """

    model_config = ConfigDict(frozen=True)

    body: Union[str, bytes]
    properties: dict[str, Any] = Field(default_factory=dict)

    def _with_properties(self, **changes: Any) -> "Message":
        properties = dict(self.properties)
        for key, value in changes.items():
            if value is None:
                properties.pop(key, None)
            else:
                properties[key] = value
        return self.model_copy(update={"properties": properties})

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    @property
    def priority(self) -> Optional[int]:
        return self.properties.get("priority")

    def with_priority(self, priority: int) -> "Message":
        clamped = max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))
        return self._with_properties(priority=clamped)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.properties.get("correlation_id")

    def with_correlation_id(self, correlation_id: str) -> "Message":
        return self._with_properties(correlation_id=correlation_id)

    @property
    def reply_to(self) -> Optional[str]:
        return self.properties.get("reply_to")

    def with_reply_to(self, reply_to: str) -> "Message":
        return self._with_properties(reply_to=reply_to)

    @property
    def headers(self) -> dict[str, Any]:
        return dict(self.properties.get("headers") or {})

    def header(self, key: str, default: Any = None) -> Any:
        return self.headers.get(key, default)

    def with_header(self, key: str, value: Any) -> "Message":
        headers = self.headers
        headers[key] = value
        return self._with_properties(headers=headers)

    def with_headers(self, headers: dict[str, Any]) -> "Message":
        """Merge `headers` into the existing header table."""
        merged = self.headers
        merged.update(headers)
        return self._with_properties(headers=merged)

    def without_header(self, key: str) -> "Message":
        if "headers" not in self.properties:
            return self
        headers = self.headers
        headers.pop(key, None)
        # an empty table is dropped entirely
        return self._with_properties(headers=headers or None)


class RpcRequest(BaseModel):
    """Inbound RPC envelope: `{"procedure": "...", "params": [...]}`."""

    procedure: StrictStr
    params: list[Any]

    def to_message(
        self,
        correlation_id: str,
        reply_to: str,
        content_type: str = "application/json",
    ) -> Message:
        """
        Build the outbound request message.

        Both correlation_id and reply_to are supplied by the caller and passed
        through opaquely.
        """
        return Message(
            body=self.model_dump_json(),
            properties={
                "content_type": content_type,
                "correlation_id": correlation_id,
                "reply_to": reply_to,
            },
        )


class RpcResponse(BaseModel):
    """Outbound RPC envelope: `{"result": ..., "error": ...}`."""

    result: Any = None
    error: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MessageFactory:
    """Wraps plain bodies into `Message` objects with publish defaults."""

    DEFAULT_PROPERTIES = {
        "content_type": "text/plain",
        "delivery_mode": 2,
    }

    def create(
        self,
        message: Union["Message", str, bytes],
        application_headers: Optional[dict[str, Any]] = None,
    ) -> Message:
        """
        Return `message` unchanged if it already is a Message, otherwise wrap it
        as a persistent text/plain message.
        """
        if isinstance(message, Message):
            return message

        properties: dict[str, Any] = dict(self.DEFAULT_PROPERTIES)
        if application_headers:
            properties["headers"] = dict(application_headers)
        return Message(body=message, properties=properties)

    def create_with_properties(
        self, body: Union[str, bytes], properties: Optional[dict[str, Any]] = None
    ) -> Message:
        properties = dict(properties or {})
        # `application_headers` is accepted as an alias for `headers`
        if "application_headers" in properties:
            properties["headers"] = dict(properties.pop("application_headers") or {})
        return Message(body=body, properties=properties)
