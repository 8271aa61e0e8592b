"""Tests for webhook signature verification."""
from __future__ import annotations

import json
import time

import pytest
import stripe

from billing_backend.app.billing import WebhookVerifier, sign_webhook_payload, verify_webhook
from billing_backend.app.billing.webhooks import compute_signature
from billing_backend.app.entitlements import VerificationFailed


SECRET = "whsec_test_secret"
NOW = 1_700_000_000


def _payload(**overrides) -> bytes:
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "created": NOW,
        "data": {"object": {"id": "cs_1", "client_reference_id": "user-1"}},
    }
    event.update(overrides)
    return json.dumps(event).encode("utf-8")


def test_valid_signature_yields_event():
    raw = _payload()
    header = sign_webhook_payload(raw, SECRET, timestamp=NOW)

    event = verify_webhook(raw, header, SECRET, 300, now=NOW + 10)

    assert event.id == "evt_1"
    assert event.type == "checkout.session.completed"
    assert event.data == {"id": "cs_1", "client_reference_id": "user-1"}
    assert event.created_at is not None


def test_data_without_object_envelope_is_used_as_is():
    raw = _payload(data={"user_id": "user-1"})
    header = sign_webhook_payload(raw, SECRET, timestamp=NOW)

    event = verify_webhook(raw, header, SECRET, 300, now=NOW)

    assert event.data == {"user_id": "user-1"}


def test_any_matching_v1_signature_is_accepted():
    raw = _payload()
    good = compute_signature(raw, SECRET, NOW)
    header = f"t={NOW},v1={'0' * 64},v1={good}"

    assert verify_webhook(raw, header, SECRET, 300, now=NOW).id == "evt_1"


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "v1=abc",
        f"t={NOW}",
        "t=notanumber,v1=abc",
    ],
)
def test_malformed_headers_are_rejected(header):
    with pytest.raises(VerificationFailed):
        verify_webhook(_payload(), header, SECRET, 300, now=NOW)


def test_tampered_body_is_rejected():
    raw = _payload()
    header = sign_webhook_payload(raw, SECRET, timestamp=NOW)

    with pytest.raises(VerificationFailed):
        verify_webhook(raw.replace(b"user-1", b"user-2"), header, SECRET, 300, now=NOW)


def test_wrong_secret_is_rejected():
    raw = _payload()
    header = sign_webhook_payload(raw, "whsec_other", timestamp=NOW)

    with pytest.raises(VerificationFailed):
        verify_webhook(raw, header, SECRET, 300, now=NOW)


def test_stale_timestamp_is_rejected_even_with_valid_signature():
    raw = _payload()
    header = sign_webhook_payload(raw, SECRET, timestamp=NOW)

    with pytest.raises(VerificationFailed) as excinfo:
        verify_webhook(raw, header, SECRET, 300, now=NOW + 301)

    assert excinfo.value.status_code == 400


def test_timestamp_from_the_future_outside_tolerance_is_rejected():
    raw = _payload()
    header = sign_webhook_payload(raw, SECRET, timestamp=NOW + 600)

    with pytest.raises(VerificationFailed):
        verify_webhook(raw, header, SECRET, 300, now=NOW)


def test_signed_body_must_be_a_json_event():
    for raw in (b"not json", b"[1, 2]", json.dumps({"type": "x"}).encode("utf-8")):
        header = sign_webhook_payload(raw, SECRET, timestamp=NOW)
        with pytest.raises(VerificationFailed):
            verify_webhook(raw, header, SECRET, 300, now=NOW)


def test_missing_secret_is_rejected():
    raw = _payload()
    header = sign_webhook_payload(raw, SECRET, timestamp=NOW)

    with pytest.raises(VerificationFailed):
        verify_webhook(raw, header, "", 300, now=NOW)


def test_verifier_binds_secret_and_uses_current_time():
    verifier = WebhookVerifier(SECRET, tolerance_seconds=300)
    raw = _payload()

    assert verifier.configured is True
    assert verifier.verify(raw, sign_webhook_payload(raw, SECRET)).id == "evt_1"
    with pytest.raises(VerificationFailed):
        verifier.verify(raw, sign_webhook_payload(raw, SECRET, timestamp=int(time.time()) - 3600))


def test_unconfigured_verifier_reports_it():
    assert WebhookVerifier(None).configured is False


def test_signed_header_is_accepted_by_stripe_sdk():
    raw = _payload()
    header = sign_webhook_payload(raw, SECRET)

    assert stripe.WebhookSignature.verify_header(raw.decode("utf-8"), header, SECRET, tolerance=300) is True


def test_header_signed_with_stripe_sdk_is_verified():
    raw = _payload()
    signature = stripe.WebhookSignature._compute_signature(f"{NOW}.{raw.decode('utf-8')}", SECRET)

    event = verify_webhook(raw, f"t={NOW},v1={signature}", SECRET, 300, now=NOW)

    assert event.id == "evt_1"


def test_out_of_range_created_timestamp_is_dropped():
    raw = _payload(created=10**20)
    header = sign_webhook_payload(raw, SECRET, timestamp=NOW)

    assert verify_webhook(raw, header, SECRET, 300, now=NOW).created_at is None
