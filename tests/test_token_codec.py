"""Start token encodings"""
import base64
import json
from datetime import datetime, timezone

import pytest

from queuejoy.domain.enums import TokenKind
from queuejoy.domain.errors import ExpiredTokenError, InvalidTokenError
from queuejoy.domain.models import StartTokenRecord
from queuejoy.services import token_codec


def _b64(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


def test_bare_push_key_decodes_as_queue_key():
    decoded = token_codec.decode("-OaVK")
    assert decoded.kind == TokenKind.QUEUE_KEY
    assert decoded.queue_key == "-OaVK"


def test_base64_record_decodes_queue_key():
    decoded = token_codec.decode("eyJxdWV1ZUtleSI6Ii1PYVZLIn0")
    assert decoded.kind == TokenKind.RECORD
    assert decoded.queue_key == "-OaVK"
    assert decoded.queue_id is None


def test_record_without_push_key_carries_queue_id():
    decoded = token_codec.decode(_b64({"queueId": "A001", "counterId": 3, "slug": "cafe"}))
    assert decoded.kind == TokenKind.RECORD
    assert decoded.queue_key is None
    assert decoded.queue_id == "A001"
    assert decoded.counter_id == "3"
    assert decoded.tenant == "cafe"


def test_encode_produces_unpadded_record():
    token = token_codec.encode("-OaVK", counter_id="c1", tenant="cafe")
    assert "=" not in token
    decoded = token_codec.decode(token)
    assert (decoded.queue_key, decoded.counter_id, decoded.tenant) == ("-OaVK", "c1", "cafe")


def test_round_trip_keeps_plain_queue_key_and_meta():
    meta = {"lang": "en", "seat": 4}
    decoded = token_codec.decode(token_codec.encode("t1", counter_id="c1", meta=meta, tenant="cafe"))
    assert decoded.kind == TokenKind.RECORD
    assert decoded.queue_key == "t1"
    assert decoded.queue_id is None
    assert decoded.counter_id == "c1"
    assert decoded.meta == meta
    assert decoded.tenant == "cafe"


def test_encode_requires_queue_key():
    with pytest.raises(InvalidTokenError):
        token_codec.encode("")


def test_plain_identifier_decodes_as_short_id():
    decoded = token_codec.decode("A001")
    assert decoded.kind == TokenKind.SHORT_ID
    assert decoded.queue_id == "A001"


@pytest.mark.parametrize("raw", ["", "   ", "not a token!", "x"])
def test_unrecognised_tokens_are_invalid(raw):
    with pytest.raises(InvalidTokenError):
        token_codec.decode(raw)


def test_extract_token_from_deep_link():
    assert token_codec.extract_token("https://t.me/QueueJoyBot?start=abc123") == "abc123"
    assert token_codec.extract_token("start=xyz&foo=1") == "xyz"
    assert token_codec.extract_token("  -OaVK ") == "-OaVK"
    assert token_codec.extract_token("") is None


def test_tenant_prefix_and_hint():
    assert token_codec.split_tenant_prefix("cafe:abc") == ("cafe", "abc")
    assert token_codec.split_tenant_prefix("abc") == (None, "abc")
    assert token_codec.tenant_hint("cafe:abc") == "cafe"
    assert token_codec.tenant_hint(token_codec.encode("-X", tenant="bakery")) == "bakery"
    assert token_codec.tenant_hint("A001") is None


def test_deep_link_strips_at_sign():
    assert token_codec.deep_link("@QueueJoyBot", "cafe:abc") == "https://t.me/QueueJoyBot?start=cafe:abc"


def test_mint_token_is_url_safe():
    token = token_codec.mint_token()
    assert len(token) == 12
    assert token_codec.decode(token)


def test_check_not_expired():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    token_codec.check_not_expired(StartTokenRecord(expires_at="2025-01-02T00:00:00.000Z"), now)
    token_codec.check_not_expired(StartTokenRecord(), now)
    with pytest.raises(ExpiredTokenError):
        token_codec.check_not_expired(StartTokenRecord(expires_at="2024-12-31T00:00:00.000Z"), now)
