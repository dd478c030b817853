import pytest
import requests

from estimator.core.settings import Settings
from estimator.services import email
from estimator.services.email import EmailError, QuoteNotifier, QuoteReadyMessage

MESSAGE = QuoteReadyMessage(
    to="alex@example.com",
    customer_name="Alex",
    business_name="Sparkle Co",
    service_name="Window Cleaning",
    total_display="$1,250.00",
    quote_url="https://quotes.example.com/q/tok123",
)


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def configured() -> Settings:
    return Settings(
        postmark_server_token="pm-token",
        postmark_from="quotes@sparkle.test",
        public_quote_base_url="https://quotes.example.com/",
    )


def test_quote_url():
    assert QuoteNotifier(configured()).quote_url("tok123") == "https://quotes.example.com/q/tok123"


def test_send_quote_ready(monkeypatch):
    sent = {}

    def fake_post(url, headers=None, data=None, timeout=None):
        sent.update(url=url, headers=headers, data=data)
        return FakeResponse(200, {"MessageID": "abc"})

    monkeypatch.setattr(email.requests, "post", fake_post)
    message_id = QuoteNotifier(configured()).send_quote_ready(MESSAGE, quote_id="q1")

    assert message_id == "abc"
    assert sent["url"] == email.POSTMARK_SEND_URL
    assert sent["headers"]["X-Postmark-Server-Token"] == "pm-token"
    assert "Your Window Cleaning quote from Sparkle Co" in sent["data"]
    assert "$1,250.00" in sent["data"]


def test_unconfigured_postmark():
    with pytest.raises(EmailError, match="postmark_not_configured"):
        QuoteNotifier(Settings(postmark_server_token=None)).send_quote_ready(MESSAGE, quote_id="q1")


@pytest.mark.parametrize(
    "outcome",
    [FakeResponse(422, {"ErrorCode": 300}), FakeResponse(200, {}), requests.ConnectionError("down")],
)
def test_postmark_failures(monkeypatch, outcome):
    def fake_post(*args, **kwargs):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(email.requests, "post", fake_post)
    with pytest.raises(EmailError):
        QuoteNotifier(configured()).send_quote_ready(MESSAGE, quote_id="q1")
