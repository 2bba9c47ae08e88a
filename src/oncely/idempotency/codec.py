"""Result codecs for caching and replaying operation outcomes.

A replay returns exactly what the codec decodes from the stored payload, so
the payload written on completion is the single source of truth for every
later caller.
"""

from __future__ import annotations

import json
from typing import Any, Generic, Protocol, TypeVar

from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")


class ResultCodecError(Exception):
    """Raised when a value cannot be encoded or a payload cannot be decoded."""


class ResultCodec(Protocol[T]):
    """Serializes opaque results (or operation errors) to bytes and back."""

    def encode(self, value: T) -> bytes: ...

    def decode(self, payload: bytes) -> T: ...


class JsonResultCodec:
    """Deterministic JSON codec for plain JSON-compatible values.

    Keys are sorted and separators are compact so equal values always encode
    to identical bytes.
    """

    def encode(self, value: Any) -> bytes:
        try:
            return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ResultCodecError(f"Value is not JSON serializable: {e}") from e

    def decode(self, payload: bytes) -> Any:
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ResultCodecError(f"Stored payload is not valid JSON: {e}") from e


class PydanticResultCodec(Generic[T]):
    """Codec for typed values (pydantic models, dataclasses, typed containers).

    Example:
        >>> codec = PydanticResultCodec(Receipt)
        >>> codec.decode(codec.encode(Receipt(txn_id="txn-1")))
        Receipt(txn_id='txn-1')
    """

    def __init__(self, type_: type[T] | Any) -> None:
        self._adapter: TypeAdapter[T] = TypeAdapter(type_)

    def encode(self, value: T) -> bytes:
        try:
            return self._adapter.dump_json(value)
        except (TypeError, ValueError) as e:
            raise ResultCodecError(f"Value cannot be serialized: {e}") from e

    def decode(self, payload: bytes) -> T:
        try:
            return self._adapter.validate_json(payload)
        except ValidationError as e:
            raise ResultCodecError(f"Stored payload does not match type: {e}") from e
