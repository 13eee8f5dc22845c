import base64

import pytest

from xchat_core.core.errors import InvalidKeyError
from xchat_core.services.identity import (
    KEY_LENGTH_BYTES,
    compute_shared_secret,
    decode_public_key,
    encode_public_key,
    fingerprint,
    generate_key_pair,
)

# Canonical low-order point (order 8) on Curve25519; exchanging with it yields all zeros.
LOW_ORDER_POINT = bytes.fromhex(
    "e0eb7a7c3b41b8ae1656e3faf19fc46ada098deb9c32b1fd866205165f49b800"
)


def test_generated_keys_are_32_bytes_and_distinct() -> None:
    first = generate_key_pair()
    second = generate_key_pair()
    assert len(first.public_key) == KEY_LENGTH_BYTES
    assert len(first.secret_key) == KEY_LENGTH_BYTES
    assert first.public_key != second.public_key
    assert first.secret_key != second.secret_key


def test_shared_secret_is_symmetric() -> None:
    alice = generate_key_pair()
    bob = generate_key_pair()
    assert compute_shared_secret(alice.secret_key, bob.public_key) == compute_shared_secret(
        bob.secret_key, alice.public_key
    )


def test_shared_secret_differs_per_peer() -> None:
    alice = generate_key_pair()
    bob = generate_key_pair()
    carol = generate_key_pair()
    assert compute_shared_secret(alice.secret_key, bob.public_key) != compute_shared_secret(
        alice.secret_key, carol.public_key
    )


@pytest.mark.parametrize("length", [0, 31, 33])
def test_shared_secret_rejects_wrong_length_public_key(length: int) -> None:
    alice = generate_key_pair()
    with pytest.raises(InvalidKeyError):
        compute_shared_secret(alice.secret_key, b"\x01" * length)


def test_shared_secret_rejects_wrong_length_secret_key() -> None:
    bob = generate_key_pair()
    with pytest.raises(InvalidKeyError):
        compute_shared_secret(b"\x01" * 16, bob.public_key)


@pytest.mark.parametrize("point", [b"\x00" * 32, LOW_ORDER_POINT])
def test_shared_secret_rejects_low_order_points(point: bytes) -> None:
    alice = generate_key_pair()
    with pytest.raises(InvalidKeyError):
        compute_shared_secret(alice.secret_key, point)


def test_invite_round_trips_through_base64() -> None:
    pair = generate_key_pair()
    invite = encode_public_key(pair.public_key)
    assert base64.b64decode(invite) == pair.public_key
    assert decode_public_key(invite) == pair.public_key


def test_decode_tolerates_surrounding_whitespace() -> None:
    pair = generate_key_pair()
    invite = f"  {encode_public_key(pair.public_key)}\n"
    assert decode_public_key(invite) == pair.public_key


@pytest.mark.parametrize(
    "invite",
    [
        "",
        "not base64 at all!",
        base64.b64encode(b"\x00" * 16).decode(),
        base64.b64encode(b"\x00" * 33).decode(),
    ],
)
def test_decode_rejects_invalid_invites(invite: str) -> None:
    with pytest.raises(InvalidKeyError):
        decode_public_key(invite)


def test_invalid_key_error_is_a_value_error() -> None:
    """Callers catching ValueError also catch key errors."""
    with pytest.raises(ValueError):
        decode_public_key("???")


def test_fingerprint_is_invite_prefix() -> None:
    pair = generate_key_pair()
    fp = fingerprint(pair.public_key)
    assert len(fp) == 8
    assert encode_public_key(pair.public_key).startswith(fp)


def test_key_pair_repr_hides_secret() -> None:
    pair = generate_key_pair()
    rendered = repr(pair)
    assert base64.b64encode(pair.secret_key).decode() not in rendered
    assert pair.secret_key.hex() not in rendered
    assert encode_public_key(pair.public_key) in rendered
