"""Validation and serialization of face descriptors at the persistence boundary."""
from __future__ import annotations

import base64
import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import get_settings
from .exceptions import DescriptorValidationError, DimensionMismatch
from .types import FaceDescriptor


def validate_descriptor(values: Any, expected_length: int) -> FaceDescriptor:
    try:
        return FaceDescriptor.from_values(values, expected_length=expected_length)
    except DimensionMismatch as exc:
        raise DescriptorValidationError(str(exc)) from exc


class DescriptorCodec:
    """Turns descriptors into storable text and back.

    Stored form is a JSON array of floats. When a cipher key is configured the
    JSON is wrapped in a Fernet token so face data is never at rest in clear.
    Decoding validates length and content, so a malformed row is rejected here
    instead of surfacing later as a distance computation error.
    """

    def __init__(self, expected_length: int, key_material: str = ""):
        self.expected_length = expected_length
        self._fernet: Optional[Fernet] = None
        if key_material:
            padded = key_material.encode("utf-8")
            key = base64.urlsafe_b64encode(padded.ljust(32, b"0")[:32])
            self._fernet = Fernet(key)

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def encode(self, descriptor: FaceDescriptor) -> str:
        if len(descriptor) != self.expected_length:
            raise DescriptorValidationError(
                f"Descriptor has {len(descriptor)} values, expected {self.expected_length}."
            )
        body = json.dumps(descriptor.to_list(), separators=(",", ":"))
        if self._fernet is None:
            return body
        return self._fernet.encrypt(body.encode("utf-8")).decode("utf-8")

    def decode(self, stored: str) -> FaceDescriptor:
        body = stored
        if self._fernet is not None:
            try:
                body = self._fernet.decrypt(stored.encode("utf-8")).decode("utf-8")
            except InvalidToken as exc:
                raise DescriptorValidationError("Stored descriptor could not be decrypted.") from exc

        try:
            values = json.loads(body)
        except (TypeError, ValueError) as exc:
            raise DescriptorValidationError("Stored descriptor is not valid JSON.") from exc
        return validate_descriptor(values, self.expected_length)


def get_codec() -> DescriptorCodec:
    settings = get_settings()
    return DescriptorCodec(settings.descriptor_length, settings.descriptor_cipher_key)
