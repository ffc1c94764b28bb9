import pytest

from concierge.logging_config import mask_phone, mask_phone_numbers
from concierge.phone import DialPolicy, normalize_phone_to_e164


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(864) 555-1234", "+18645551234"),
        ("864-555-1234", "+18645551234"),
        ("+1 (864) 555-1234", "+18645551234"),
        ("18645551234", "+18645551234"),
        ("+44 20 7946 0958", "+442079460958"),
    ],
)
def test_normalize_known_formats(raw, expected):
    assert normalize_phone_to_e164(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "555-1234", "44 20 7946 0958", "not a phone"])
def test_normalize_rejects_undialable(raw):
    assert normalize_phone_to_e164(raw) is None


def test_normalize_is_idempotent():
    once = normalize_phone_to_e164("(864) 555-1234")
    assert normalize_phone_to_e164(once) == once


def test_dial_policy_live_calls_dial_the_real_number():
    policy = DialPolicy(live_calls_enabled=True, test_numbers=["+15550001111"])
    assert policy.resolve("864-555-1234") == "+18645551234"


def test_dial_policy_substitutes_test_numbers_round_robin():
    policy = DialPolicy(live_calls_enabled=False, test_numbers=["555-000-1111", "+1 555 000 2222"])
    dialed = [policy.resolve(f"+1864555{n:04d}") for n in range(3)]
    assert dialed == ["+15550001111", "+15550002222", "+15550001111"]


def test_dial_policy_refuses_without_test_numbers():
    policy = DialPolicy(live_calls_enabled=False, test_numbers=[])
    assert policy.resolve("+18645551234") is None


def test_log_fields_mask_phone_numbers():
    event = mask_phone_numbers(None, "info", {"event": "sms_sent", "to": "+18645551234", "call_id": "call-1"})
    assert event["to"] == "***1234"
    assert event["call_id"] == "call-1"
    assert mask_phone(None) is None
