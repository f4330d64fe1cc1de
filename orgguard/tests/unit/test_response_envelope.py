from __future__ import annotations

from orgguard.apps.api.response import API_VERSION, is_enveloped, wrap_success


def test_wrap_success_stamps_request_id_and_version() -> None:
    payload = wrap_success("req-1", [{"slug": "free"}])
    assert payload == {"data": [{"slug": "free"}], "meta": {"request_id": "req-1", "api_version": API_VERSION}}
    assert is_enveloped(payload)


def test_plain_payloads_are_not_treated_as_enveloped() -> None:
    # A route body that happens to carry a data key still gets wrapped.
    assert not is_enveloped({"data": 1, "meta": {"api_version": "v0"}})
    assert not is_enveloped({"data": 1})
    assert not is_enveloped([1, 2])
