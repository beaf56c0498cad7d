from __future__ import annotations

import pytest

from backend.app.subscriptions import ObfuscatedIdentityCodec, SubscriberRef


@pytest.fixture
def codec():
    return ObfuscatedIdentityCodec("stable-salt")


def test_encode_is_deterministic_and_opaque(codec, subscriber):
    token = codec.encode(subscriber)

    assert token == codec.encode(subscriber)
    assert subscriber.key() not in token
    assert len(token) <= 64
    assert codec.decode(token) == subscriber


def test_different_salts_produce_unrelated_tokens(subscriber):
    token = ObfuscatedIdentityCodec("salt-a").encode(subscriber)

    assert ObfuscatedIdentityCodec("salt-b").decode(token) is None


def test_tampered_token_is_rejected(codec, subscriber):
    token = codec.encode(subscriber)
    flipped = ("A" if token[0] != "A" else "B") + token[1:]

    assert codec.decode(flipped) is None


@pytest.mark.parametrize("token", [None, "", "not base64 at all!", "AAAA"])
def test_malformed_tokens_decode_to_none(codec, token):
    assert codec.decode(token) is None


def test_overlong_reference_is_refused(codec):
    subscriber = SubscriberRef(owner_type="organization", owner_id="x" * 60)

    with pytest.raises(ValueError):
        codec.encode(subscriber)


def test_salt_is_required():
    with pytest.raises(ValueError):
        ObfuscatedIdentityCodec("")
