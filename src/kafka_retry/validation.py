"""
Payload decoding and validation.

The orchestrator decodes each record's payload according to the configured
``payload_format`` and then hands it to the configured validator, if any.
Validation logic itself is pluggable; this module only defines the seam and
two common adapters.
"""

import inspect
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from kafka_retry.exceptions import ValidationError


class MessageValidator(ABC):
    """Validates (and may transform) a decoded payload."""

    @abstractmethod
    async def validate(self, payload: Any) -> Any:
        """
        Validate a decoded payload.

        Returns:
            The payload to pass to the handler

        Raises:
            ValidationError: If the payload is rejected
        """


class PydanticSchemaValidator(MessageValidator):
    """
    Validates payloads against a pydantic model.

    The handler receives the model instance rather than the raw dict.

    Example:
        RetryConfig(validator=PydanticSchemaValidator(OrderCreated))
    """

    def __init__(self, model: Type[BaseModel]):
        self.model = model

    async def validate(self, payload: Any) -> Any:
        try:
            return self.model.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Payload does not match {self.model.__name__}",
                cause=e,
                context={"error_count": e.error_count()},
            ) from e


class CallableValidator(MessageValidator):
    """
    Adapts a plain predicate (sync or async).

    Returning False or raising rejects the payload; any other return value
    accepts it unchanged.
    """

    def __init__(self, predicate: Callable[[Any], Any], name: Optional[str] = None):
        self.predicate = predicate
        self.name = name or getattr(predicate, "__name__", type(predicate).__name__)

    async def validate(self, payload: Any) -> Any:
        try:
            result = self.predicate(payload)
            if inspect.isawaitable(result):
                result = await result
        except ValidationError:
            raise
        except Exception as e:
            raise ValidationError(f"Validator {self.name} raised", cause=e) from e
        if result is False:
            raise ValidationError(f"Validator {self.name} rejected payload")
        return payload


def decode_payload(raw: Optional[bytes], payload_format: str) -> Any:
    """
    Decode a record value.

    Args:
        raw: Record value bytes (None for tombstones)
        payload_format: "json" or "raw"

    Returns:
        Parsed JSON document, or the bytes unchanged for "raw"

    Raises:
        ValidationError: If the payload is not valid UTF-8 JSON
    """
    if payload_format == "raw" or raw is None:
        return raw
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("Payload is not valid JSON", cause=e) from e


__all__ = [
    "MessageValidator",
    "PydanticSchemaValidator",
    "CallableValidator",
    "decode_payload",
]
