"""Tests for the Mercado Pago provider (mocked mercadopago.SDK, no network)."""

import hashlib
import hmac
from unittest.mock import Mock

import pytest
import requests

from savepad.features.billing.mercadopago_provider import MercadoPagoProvider, verify_signature
from savepad.features.billing.provider import PaymentNotFoundError, PaymentProviderError


@pytest.fixture
def sdk():
    return Mock()


@pytest.fixture
def provider(sdk):
    return MercadoPagoProvider(access_token="TEST-token", sdk=sdk)


def test_create_preference_sends_items_and_reference(provider, sdk):
    sdk.preference.return_value.create.return_value = {
        "status": 201,
        "response": {"id": "pref-1", "init_point": "https://mp.test/pay/pref-1"},
    }

    session = provider.create_preference(
        "Plano Individual SavePad",
        15.0,
        "7|individual|1",
        notification_url="https://savepad.test/webhook",
        back_urls={"success": "https://savepad.test/pagamento-sucesso"},
    )

    assert session.id == "pref-1"
    assert session.url == "https://mp.test/pay/pref-1"
    body = sdk.preference.return_value.create.call_args[0][0]
    assert body["items"] == [
        {"title": "Plano Individual SavePad", "quantity": 1, "unit_price": 15.0, "currency_id": "BRL"}
    ]
    assert body["external_reference"] == "7|individual|1"
    assert body["notification_url"] == "https://savepad.test/webhook"
    assert body["auto_return"] == "approved"


def test_create_preapproval_body(provider, sdk):
    sdk.preapproval.return_value.create.return_value = {
        "status": 201,
        "response": {"id": "pre-1", "init_point": "https://mp.test/sub/pre-1"},
    }

    session = provider.create_preapproval(
        "Plano Familiar SavePad (anual)", 300.0, 12, "ana@example.com", "7|familiar|3"
    )

    assert session.id == "pre-1"
    body = sdk.preapproval.return_value.create.call_args[0][0]
    assert body["payer_email"] == "ana@example.com"
    assert body["auto_recurring"] == {
        "frequency": 12,
        "frequency_type": "months",
        "transaction_amount": 300.0,
        "currency_id": "BRL",
    }


def test_get_payment_parses_detail(provider, sdk):
    sdk.payment.return_value.get.return_value = {
        "status": 200,
        "response": {
            "id": 123,
            "status": "approved",
            "status_detail": "accredited",
            "external_reference": "7|individual|1",
            "transaction_amount": "15.00",
            "payer": {"email": "ana@example.com"},
        },
    }

    detail = provider.get_payment("123")

    sdk.payment.return_value.get.assert_called_once_with("123")
    assert detail.id == "123"
    assert detail.kind == "payment"
    assert detail.status == "approved"
    assert detail.payer_email == "ana@example.com"
    assert detail.amount == 15.0
    assert detail.external_reference == "7|individual|1"


def test_get_preapproval_parses_detail(provider, sdk):
    sdk.preapproval.return_value.get.return_value = {
        "status": 200,
        "response": {"id": "pre-1", "status": "authorized", "payer_email": "a@b.c", "auto_recurring": {"transaction_amount": 15}},
    }

    detail = provider.get_preapproval("pre-1")
    assert detail.kind == "preapproval"
    assert detail.status == "authorized"
    assert detail.amount == 15.0


def test_cancel_preapproval_updates_status(provider, sdk):
    sdk.preapproval.return_value.update.return_value = {"status": 200, "response": {"id": "pre-1", "status": "cancelled"}}

    provider.cancel_preapproval("pre-1")

    sdk.preapproval.return_value.update.assert_called_once_with("pre-1", {"status": "cancelled"})


def test_not_found_maps_to_payment_not_found(provider, sdk):
    sdk.payment.return_value.get.return_value = {"status": 404, "response": {"message": "not found"}}
    with pytest.raises(PaymentNotFoundError):
        provider.get_payment("1")


def test_server_error_keeps_status_and_body(provider, sdk):
    sdk.payment.return_value.get.return_value = {"status": 500, "response": "internal"}
    with pytest.raises(PaymentProviderError) as exc:
        provider.get_payment("1")
    assert exc.value.status_code == 500
    assert exc.value.body == "internal"


def test_non_dict_success_body_is_provider_error(provider, sdk):
    sdk.payment.return_value.get.return_value = {"status": 200, "response": "<html>"}
    with pytest.raises(PaymentProviderError):
        provider.get_payment("1")


def test_transport_error_is_provider_error(provider, sdk):
    sdk.payment.return_value.get.side_effect = requests.ConnectionError("refused")
    with pytest.raises(PaymentProviderError):
        provider.get_payment("1")


def test_missing_token_is_rejected(monkeypatch):
    from savepad.core.config import settings

    monkeypatch.setattr(settings, "MERCADO_PAGO_ACCESS_TOKEN", None)
    with pytest.raises(PaymentProviderError):
        MercadoPagoProvider()


def test_builds_sdk_from_token():
    provider = MercadoPagoProvider(access_token="TEST-token")
    assert provider.sdk is not None


def test_verify_signature():
    manifest = "id:abc123;request-id:req-9;ts:1700000000;"
    digest = hmac.new(b"secret", manifest.encode(), hashlib.sha256).hexdigest()
    header = f"ts=1700000000,v1={digest}"

    assert verify_signature("secret", header, "req-9", "ABC123")
    assert not verify_signature("other", header, "req-9", "abc123")
    assert not verify_signature("secret", None, "req-9", "abc123")
