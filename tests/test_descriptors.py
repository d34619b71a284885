from __future__ import annotations

import json
import math

import numpy as np
import pytest

from conftest import descriptor
from rollcall.descriptors import DescriptorCodec, validate_descriptor
from rollcall.exceptions import DescriptorValidationError, DimensionMismatch
from rollcall.types import FaceDescriptor


def test_descriptor_values_are_an_immutable_copy():
    source = np.array([0.1, 0.2, 0.3, 0.4])
    value = FaceDescriptor.from_values(source)
    source[0] = 9.0
    assert value.values[0] == pytest.approx(0.1)
    with pytest.raises(ValueError):
        value.values[0] = 1.0


@pytest.mark.parametrize(
    "values",
    [
        [0.1, math.nan, 0.0, 0.0],
        [0.1, math.inf, 0.0, 0.0],
        [[0.1, 0.2], [0.3, 0.4]],
        np.array(["a", "b"]),
        [True, 0.0, 0.0, 0.0],
        b"\x00\x01",
    ],
)
def test_from_values_rejects_malformed_input(values):
    with pytest.raises(DimensionMismatch):
        FaceDescriptor.from_values(values)


def test_validate_descriptor_enforces_configured_length():
    assert len(validate_descriptor([0.0, 1.0, 2.0, 3.0], 4)) == 4
    with pytest.raises(DescriptorValidationError, match="expected 4"):
        validate_descriptor([0.0, 1.0, 2.0], 4)


def test_plain_codec_stores_json_array():
    codec = DescriptorCodec(expected_length=4)
    stored = codec.encode(descriptor(0.5, 0.25, 0.0, 1.0))
    assert json.loads(stored) == [0.5, 0.25, 0.0, 1.0]
    assert codec.decode(stored).to_list() == [0.5, 0.25, 0.0, 1.0]
    assert not codec.encrypted


def test_encrypted_codec_hides_values_and_rejects_wrong_key():
    codec = DescriptorCodec(expected_length=4, key_material="classroom-secret")
    stored = codec.encode(descriptor(0.5, 0.25, 0.0, 1.0))
    assert codec.encrypted
    assert "0.25" not in stored
    assert codec.decode(stored).to_list() == [0.5, 0.25, 0.0, 1.0]

    with pytest.raises(DescriptorValidationError, match="decrypted"):
        DescriptorCodec(expected_length=4, key_material="other-secret").decode(stored)


@pytest.mark.parametrize("stored", ["not json", "[0.1, 0.2]", '{"a": 1}', "[0.1, null, 0.3, 0.4]"])
def test_decode_rejects_malformed_stored_payloads(stored):
    with pytest.raises(DescriptorValidationError):
        DescriptorCodec(expected_length=4).decode(stored)


def test_encode_rejects_descriptor_of_wrong_length():
    with pytest.raises(DescriptorValidationError):
        DescriptorCodec(expected_length=4).encode(descriptor(0.0, 0.0))


@pytest.mark.parametrize("values", [np.array([]), [], np.array([0.1, np.nan]), np.array([[0.1], [0.2]])])
def test_direct_construction_is_validated_too(values):
    with pytest.raises(DimensionMismatch):
        FaceDescriptor(values)
