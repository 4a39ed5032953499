"""Settings parsing and gateway registry."""
from marketplace.core.config import Settings
from marketplace.services.gateways import GatewayName, build_gateways


def _settings(**values) -> Settings:
    return Settings(_env_file=None, **values)


def test_no_credentials_leaves_only_cod():
    gateways = build_gateways(_settings(razorpay_key_id="", razorpay_key_secret="", stripe_secret_key="", paypal_client_id="", paypal_client_secret=""))
    assert list(gateways) == [GatewayName.COD]


def test_credentials_enable_their_gateway():
    settings = _settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="secret",
        stripe_secret_key="sk_test_1",
        paypal_client_id="pp",
        paypal_client_secret="pp_secret",
        paypal_mode="live",
        frontend_url="https://shop.example.com/",
        stripe_currencies="usd, eur",
    )
    gateways = build_gateways(settings)
    assert set(gateways) == set(GatewayName)
    assert gateways[GatewayName.STRIPE].currencies == ["USD", "EUR"]
    paypal = gateways[GatewayName.PAYPAL]
    assert paypal.base_url == "https://api-m.paypal.com"
    assert paypal.return_url == "https://shop.example.com/payment/success"
    assert paypal.cancel_url == "https://shop.example.com/payment/failed"


def test_half_configured_razorpay_stays_disabled():
    settings = _settings(razorpay_key_id="rzp_test_key", razorpay_key_secret="   ")
    assert not settings.razorpay_enabled


def test_gateway_priority_parsing():
    assert _settings(payment_gateway_priority="COD, paypal").gateway_priority == ["cod", "paypal"]
    assert _settings(payment_gateway_priority="").gateway_priority == ["razorpay", "stripe", "paypal", "cod"]
