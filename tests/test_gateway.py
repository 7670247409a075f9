import pytest
import requests
from razorpay.errors import BadRequestError, ServerError

from storefront.errors import GatewayRejected, GatewayUnavailable, RecordNotFound
from storefront.gateway.razorpay_service import RazorpayGateway
from storefront.gateway.signature import generate_signature


@pytest.fixture
def sdk(mocker):
    return mocker.Mock()


@pytest.fixture
def rzp(sdk):
    return RazorpayGateway("rzp_test_key", "test_secret", timeout=2.5, client=sdk)


def test_every_call_is_bounded_by_timeout(rzp, sdk):
    rzp.fetch_payment("pay_G1")
    sdk.payment.fetch.assert_called_once_with("pay_G1", timeout=2.5)


def test_create_order_requests_auto_capture(rzp, sdk):
    rzp.create_order(amount_paise=49900, currency="INR", receipt="RCPT-1", notes={"order_id": "9"})
    data = sdk.order.create.call_args.kwargs["data"]
    assert data == {
        "amount": 49900, "currency": "INR", "receipt": "RCPT-1",
        "payment_capture": 1, "notes": {"order_id": "9"},
    }


@pytest.mark.parametrize("error", [
    requests.exceptions.Timeout(),
    requests.exceptions.ConnectionError("reset"),
    ServerError("upstream 500"),
])
def test_transport_and_server_errors_are_retryable(rzp, sdk, error):
    sdk.payment.fetch.side_effect = error
    with pytest.raises(GatewayUnavailable):
        rzp.fetch_payment("pay_G1")


def test_bad_request_on_lookup_is_not_found(rzp, sdk):
    sdk.refund.fetch.side_effect = BadRequestError("The id provided does not exist")
    with pytest.raises(RecordNotFound):
        rzp.fetch_refund("rfnd_missing")


def test_bad_request_on_write_is_rejected(rzp, sdk):
    sdk.payment.refund.side_effect = BadRequestError("The refund amount provided is greater than amount captured")
    with pytest.raises(GatewayRejected):
        rzp.create_refund("pay_G1", amount_paise=10**9)


def test_full_refund_sends_no_amount(rzp, sdk):
    rzp.create_refund("pay_G1")
    assert sdk.payment.refund.call_args.args == ("pay_G1", {})


def test_unconfigured_gateway_is_unavailable():
    rzp = RazorpayGateway("", "")
    assert not rzp.is_configured()
    with pytest.raises(GatewayUnavailable):
        rzp.fetch_payment("pay_G1")


def test_checkout_signature_uses_key_secret(rzp):
    good = generate_signature("order_G1|pay_G1", "test_secret")
    assert rzp.verify_payment_signature("order_G1", "pay_G1", good)
    assert not rzp.verify_payment_signature("order_G1", "pay_G2", good)
