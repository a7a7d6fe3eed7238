import base64
import hashlib
import hmac

import pytest

from errors import WebhookAuthError
from payments.webhook_security import WebhookVerifier, parse_signature_header, sign_payload

SECRET = "whsec_test"
BODY = b'{"order_id":"TISCO1","status":"COMPLETED"}'
NOW = 1_760_000_000


def digest(body=BODY, secret=SECRET):
    return hmac.new(secret.encode(), body, hashlib.sha256).digest()


def test_parse_signature_header():
    assert parse_signature_header("t=1700000000, v1=abc") == {"t": "1700000000", "v1": "abc"}
    assert parse_signature_header("deadbeef") == {}
    assert parse_signature_header(None) == {}


def test_bare_hex_and_base64_signatures():
    verifier = WebhookVerifier(secret=SECRET, production=True)
    assert verifier.verify_signature(BODY, digest().hex())
    assert verifier.verify_signature(BODY, base64.b64encode(digest()).decode())
    assert verifier.verify_signature(BODY, f"sha256={digest().hex()}")


def test_tampered_body_is_rejected():
    verifier = WebhookVerifier(secret=SECRET, production=True)
    assert not verifier.verify_signature(BODY + b" ", digest().hex())
    assert not verifier.verify_signature(BODY, "not-a-signature")
    assert not verifier.verify_signature(BODY, None)


def test_compound_signature_with_fresh_timestamp():
    verifier = WebhookVerifier(secret=SECRET, production=True)
    header = sign_payload(SECRET, BODY, timestamp=NOW)
    assert header.startswith(f"t={NOW},v1=")
    assert verifier.verify_signature(BODY, header, now=NOW + 10)


def test_stale_timestamp_rejected_only_in_production():
    header = sign_payload(SECRET, BODY, timestamp=NOW)
    later = NOW + 301

    assert not WebhookVerifier(secret=SECRET, production=True).verify_signature(BODY, header, now=later)
    assert WebhookVerifier(secret=SECRET, production=False).verify_signature(BODY, header, now=later)


def test_missing_secret_depends_on_environment():
    header = digest().hex()
    assert not WebhookVerifier(secret="", production=True).verify_signature(BODY, header)
    assert WebhookVerifier(secret="", production=False).verify_signature(BODY, header)


def test_api_key_comparison():
    verifier = WebhookVerifier(secret=SECRET, api_key="zeno-key")
    assert verifier.verify_api_key("zeno-key")
    assert not verifier.verify_api_key("zeno-kez")
    assert not verifier.verify_api_key(None)
    assert not WebhookVerifier(secret=SECRET, api_key="").verify_api_key("")


def test_authenticate_accepts_either_credential():
    verifier = WebhookVerifier(secret=SECRET, api_key="zeno-key", production=True)

    verifier.authenticate(BODY, sign_payload(SECRET, BODY), None)
    verifier.authenticate(BODY, "garbage", "zeno-key")
    with pytest.raises(WebhookAuthError) as exc:
        verifier.authenticate(BODY, "garbage", "wrong")
    assert exc.value.status_code == 401
