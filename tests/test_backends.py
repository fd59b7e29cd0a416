"""
test_backends.py — Provider request shapes and failure mapping.

Covers:
    • Email: SendGrid, Mailgun, Postmark, SMTP, Gmail
    • SMS: HTTP gateway, Twilio, Nexmo, Africa's Talking, Clickatell
    • Push: FCM, webhook
    • AWS: SES email, SNS sms (boto3 client mocked)
    • Non-2xx responses and transport errors → BackendDeliveryError
    • Phone number normalisation and HTML stripping

Run with:
    pytest tests/test_backends.py -v
"""

from __future__ import annotations

import base64
import json
import smtplib
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs

import httpx
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from backend.app.core.errors import BackendDeliveryError
from backend.app.notifications.backends.aws_providers import SesBackend, SnsBackend, make_aws_client
from backend.app.notifications.backends.base import strip_html
from backend.app.notifications.backends.email_providers import (
    GmailBackend,
    MailgunBackend,
    PostmarkBackend,
    SendGridBackend,
    SmtpBackend,
)
from backend.app.notifications.backends.push_providers import (
    FCM_URL,
    FcmBackend,
    WebhookPushBackend,
    push_payload,
)
from backend.app.notifications.backends.sms_providers import (
    AfricasTalkingBackend,
    ClickatellBackend,
    HttpSmsBackend,
    NexmoBackend,
    TwilioBackend,
    normalize_msisdn,
    sms_text,
)
from backend.app.notifications.models import RenderedContent


EMAIL = RenderedContent(
    subject="Notification: Order Confirmation",
    html="<h2>Order Confirmation</h2><p>Your order has been confirmed</p>",
    text="Order Confirmation\n\nYour order has been confirmed",
)
SMS = RenderedContent(text="Order Confirmation: Your order has been confirmed")
PUSH = RenderedContent(
    subject="Order Confirmation",
    text="Your order has been confirmed",
    push_payload={
        "title": "Order Confirmation",
        "body": "Your order has been confirmed",
        "data": {"orderId": "ORD-123"},
    },
)

SMTP_PATH = "backend.app.notifications.backends.email_providers.smtplib"


class _Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status_code: int = 200, body=None):
        self.requests = []
        self.status_code = status_code
        self.body = body if body is not None else {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def json(self):
        return json.loads(self.last.content)

    def form(self):
        return {k: v[0] for k, v in parse_qs(self.last.content.decode()).items()}


def _client(recorder) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


def _basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


# ═══════════════════════════════════════════════════════════════════════════
# Email
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailHttpBackends:

    async def test_sendgrid_request(self):
        rec = _Recorder(202)
        await SendGridBackend(_client(rec), "SG.key", "noreply@example.com").send(
            "user@example.com", EMAIL,
        )
        body = rec.json()
        assert rec.last.url == "https://api.sendgrid.com/v3/mail/send"
        assert rec.last.headers["Authorization"] == "Bearer SG.key"
        assert body["personalizations"] == [{"to": [{"email": "user@example.com"}]}]
        assert body["from"] == {"email": "noreply@example.com"}
        assert body["subject"] == "Notification: Order Confirmation"
        assert body["content"][0] == {"type": "text/plain", "value": EMAIL.text}
        assert body["content"][1] == {"type": "text/html", "value": EMAIL.html}

    async def test_mailgun_form_and_basic_auth(self):
        rec = _Recorder(200, {"id": "<msg@mg>"})
        await MailgunBackend(
            _client(rec), "mg-key", "mg.example.com", "noreply@example.com",
        ).send("user@example.com", EMAIL)
        assert rec.last.url == "https://api.mailgun.net/v3/mg.example.com/messages"
        assert rec.last.headers["Authorization"] == _basic("api", "mg-key")
        form = rec.form()
        assert form["to"] == "user@example.com"
        assert form["subject"] == "Notification: Order Confirmation"
        assert form["html"] == EMAIL.html

    async def test_postmark_server_token_header(self):
        rec = _Recorder(200, {"MessageID": "abc"})
        await PostmarkBackend(_client(rec), "pm-token", "noreply@example.com").send(
            "user@example.com", EMAIL,
        )
        assert rec.last.headers["X-Postmark-Server-Token"] == "pm-token"
        body = rec.json()
        assert body["To"] == "user@example.com"
        assert body["HtmlBody"] == EMAIL.html
        assert body["TextBody"] == EMAIL.text

    async def test_missing_text_falls_back_to_stripped_html(self):
        rec = _Recorder(202)
        await SendGridBackend(_client(rec), "k", "f@example.com").send(
            "user@example.com", RenderedContent(subject="S", html="<p>Hi&nbsp;there</p>"),
        )
        assert rec.json()["content"][0]["value"] == "Hi there"

    async def test_non_2xx_raises_with_status(self):
        rec = _Recorder(401, {"errors": ["bad key"]})
        with pytest.raises(BackendDeliveryError) as excinfo:
            await SendGridBackend(_client(rec), "bad", "f@example.com").send("u@example.com", EMAIL)
        err = excinfo.value
        assert err.provider == "SendGrid"
        assert err.details["status_code"] == 401
        assert "401" in err.message

    async def test_transport_error_raises(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(boom))
        with pytest.raises(BackendDeliveryError) as excinfo:
            await PostmarkBackend(client, "t", "f@example.com").send("u@example.com", EMAIL)
        assert "request failed" in excinfo.value.reason


class TestSmtpBackends:

    async def test_starttls_on_submission_port(self):
        with patch(f"{SMTP_PATH}.SMTP") as smtp_cls:
            backend = SmtpBackend("smtp.example.com", 587, "user", "pw", "noreply@example.com")
            await backend.send("user@example.com", EMAIL)

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=20.0)
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pw")
        msg = server.send_message.call_args.args[0]
        assert msg["To"] == "user@example.com"
        assert msg["Subject"] == "Notification: Order Confirmation"
        assert msg.is_multipart()

    async def test_gmail_uses_implicit_tls(self):
        with patch(f"{SMTP_PATH}.SMTP_SSL") as ssl_cls:
            await GmailBackend("me@gmail.com", "app-pass").send("user@example.com", EMAIL)

        ssl_cls.assert_called_once_with("smtp.gmail.com", 465, timeout=20.0)
        server = ssl_cls.return_value.__enter__.return_value
        server.login.assert_called_once_with("me@gmail.com", "app-pass")
        server.starttls.assert_not_called()

    async def test_authentication_failure_maps_to_backend_error(self):
        with patch(f"{SMTP_PATH}.SMTP_SSL") as ssl_cls:
            server = ssl_cls.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            with pytest.raises(BackendDeliveryError) as excinfo:
                await GmailBackend("me@gmail.com", "wrong").send("user@example.com", EMAIL)

        assert excinfo.value.provider == "Gmail"
        assert excinfo.value.details["host"] == "smtp.gmail.com"

    async def test_connection_refused_maps_to_backend_error(self):
        with patch(f"{SMTP_PATH}.SMTP", side_effect=ConnectionRefusedError("refused")):
            with pytest.raises(BackendDeliveryError):
                await SmtpBackend("localhost", 25, "u", "p", "f@example.com").send("u@example.com", EMAIL)


# ═══════════════════════════════════════════════════════════════════════════
# SMS
# ═══════════════════════════════════════════════════════════════════════════

class TestSmsHelpers:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("0712345678", "254712345678"),
            ("+254712345678", "254712345678"),
            ("254712345678", "254712345678"),
            (" 0112345678 ", "254112345678"),
            ("+15550001111", "15550001111"),
        ],
    )
    def test_normalize_msisdn(self, raw, expected):
        assert normalize_msisdn(raw) == expected

    def test_sms_text_strips_html_and_pads_short_bodies(self):
        assert sms_text(RenderedContent(html="<b>Hello</b> world")) == "Hello world"
        assert sms_text(RenderedContent(text="ok")) == "ok - message"

    def test_strip_html(self):
        assert strip_html("<p>a&nbsp;b</p>") == "a b"


class TestSmsBackends:

    async def test_http_gateway_form_fields(self):
        rec = _Recorder(200)
        backend = HttpSmsBackend(
            _client(rec), "https://sms.example.com/send", "sms-key",
            partner_id="42", shortcode="ACME",
        )
        await backend.send("0712345678", SMS)
        assert rec.form() == {
            "apikey": "sms-key",
            "partnerID": "42",
            "shortcode": "ACME",
            "pass_type": "plain",
            "mobile": "254712345678",
            "message": SMS.text,
        }

    async def test_twilio_form_and_auth(self):
        rec = _Recorder(201, {"sid": "SM1"})
        await TwilioBackend(_client(rec), "AC123", "tok", "+15550001111").send("+254712345678", SMS)
        assert rec.last.url == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert rec.last.headers["Authorization"] == _basic("AC123", "tok")
        assert rec.form() == {"To": "+254712345678", "From": "+15550001111", "Body": SMS.text}

    async def test_nexmo_success(self):
        rec = _Recorder(200, {"messages": [{"status": "0", "message-id": "m1"}]})
        await NexmoBackend(_client(rec), "k", "s", "ACME").send("254712345678", SMS)
        assert rec.form()["api_secret"] == "s"

    async def test_nexmo_rejection_in_body_raises(self):
        rec = _Recorder(200, {"messages": [{"status": "4", "error-text": "Bad Credentials"}]})
        with pytest.raises(BackendDeliveryError) as excinfo:
            await NexmoBackend(_client(rec), "k", "bad", "ACME").send("254712345678", SMS)
        assert excinfo.value.reason == "Bad Credentials"

    async def test_africastalking_normalises_to_plus_254(self):
        rec = _Recorder(201, {"SMSMessageData": {"Recipients": [{"status": "Success"}]}})
        backend = AfricasTalkingBackend(
            _client(rec), "at-key", "sandbox", "https://api.africastalking.com/version1/messaging",
        )
        await backend.send("0712345678", SMS)
        assert rec.last.headers["apiKey"] == "at-key"
        assert rec.json() == {
            "username": "sandbox",
            "message": SMS.text,
            "phoneNumbers": ["+254712345678"],
        }

    async def test_clickatell_strips_plus(self):
        rec = _Recorder(202)
        await ClickatellBackend(_client(rec), "ck-key").send("+254712345678", SMS)
        assert rec.last.headers["Authorization"] == "ck-key"
        assert rec.json() == {"content": SMS.text, "to": ["254712345678"]}

    async def test_gateway_5xx_raises(self):
        rec = _Recorder(503)
        with pytest.raises(BackendDeliveryError) as excinfo:
            await TwilioBackend(_client(rec), "AC1", "t", "+1").send("+254712345678", SMS)
        assert excinfo.value.details["status_code"] == 503


# ═══════════════════════════════════════════════════════════════════════════
# Push
# ═══════════════════════════════════════════════════════════════════════════

class TestPushBackends:

    async def test_fcm_envelope(self):
        rec = _Recorder(200, {"success": 1, "failure": 0})
        await FcmBackend(_client(rec), "fcm-key").send("device-token-123", PUSH)
        assert rec.last.url == FCM_URL
        assert rec.last.headers["Authorization"] == "key=fcm-key"
        assert rec.json() == {
            "to": "device-token-123",
            "notification": {
                "title": "Order Confirmation",
                "body": "Your order has been confirmed",
            },
            "data": {"orderId": "ORD-123"},
        }

    async def test_fcm_failure_in_body_raises(self):
        rec = _Recorder(200, {"success": 0, "failure": 1, "results": [{"error": "NotRegistered"}]})
        with pytest.raises(BackendDeliveryError) as excinfo:
            await FcmBackend(_client(rec), "fcm-key").send("stale-token", PUSH)
        assert excinfo.value.reason == "NotRegistered"

    async def test_webhook_bearer_token(self):
        rec = _Recorder(200)
        await WebhookPushBackend(_client(rec), "https://push.example.com/hook", "secret").send(
            "device-token-123", PUSH,
        )
        assert rec.last.headers["Authorization"] == "Bearer secret"
        assert rec.json() == {
            "device_token": "device-token-123",
            "notification": PUSH.push_payload,
        }

    async def test_webhook_without_token_sends_no_auth(self):
        rec = _Recorder(200)
        await WebhookPushBackend(_client(rec), "https://push.example.com/hook").send("t", PUSH)
        assert "Authorization" not in rec.last.headers

    def test_push_payload_falls_back_to_text(self):
        assert push_payload(RenderedContent(subject="T", text="B")) == {
            "title": "T", "body": "B", "data": {},
        }


# ═══════════════════════════════════════════════════════════════════════════
# AWS
# ═══════════════════════════════════════════════════════════════════════════

def _client_error(code: str, message: str, status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "SendEmail",
    )


class TestAwsBackends:

    async def test_ses_send_email_shape(self):
        ses = MagicMock()
        ses.send_email.return_value = {"MessageId": "ses-1"}
        await SesBackend(ses, "noreply@example.com", "eu-west-1").send("user@example.com", EMAIL)

        kwargs = ses.send_email.call_args.kwargs
        assert kwargs["Source"] == "noreply@example.com"
        assert kwargs["Destination"] == {"ToAddresses": ["user@example.com"]}
        assert kwargs["Message"]["Subject"]["Data"] == "Notification: Order Confirmation"
        assert kwargs["Message"]["Body"]["Html"]["Data"] == EMAIL.html
        assert kwargs["Message"]["Body"]["Text"]["Data"] == EMAIL.text

    async def test_ses_rejection_maps_to_backend_error(self):
        ses = MagicMock()
        ses.send_email.side_effect = _client_error(
            "MessageRejected", "Email address is not verified.",
        )
        with pytest.raises(BackendDeliveryError) as excinfo:
            await SesBackend(ses, "noreply@example.com").send("user@example.com", EMAIL)

        err = excinfo.value
        assert err.provider == "AWS SES"
        assert err.reason == "400 - MessageRejected: Email address is not verified."
        assert err.details["operation"] == "send_email"
        assert err.details["region"] == "us-east-1"

    async def test_sns_publish_uses_e164_and_plain_text(self):
        sns = MagicMock()
        sns.publish.return_value = {"MessageId": "sns-1"}
        await SnsBackend(sns).send("0712345678", RenderedContent(html="<b>OTP</b>: 1234"))

        sns.publish.assert_called_once_with(PhoneNumber="+254712345678", Message="OTP: 1234")

    async def test_sns_sender_id_attribute(self):
        sns = MagicMock()
        sns.publish.return_value = {}
        await SnsBackend(sns, sender_id="ACME").send("+254712345678", SMS)

        attrs = sns.publish.call_args.kwargs["MessageAttributes"]
        assert attrs["AWS.SNS.SMS.SenderID"]["StringValue"] == "ACME"

    async def test_sns_transport_error_maps_to_backend_error(self):
        sns = MagicMock()
        sns.publish.side_effect = EndpointConnectionError(endpoint_url="https://sns.us-east-1.amazonaws.com")
        with pytest.raises(BackendDeliveryError) as excinfo:
            await SnsBackend(sns).send("+254712345678", SMS)
        assert excinfo.value.provider == "AWS SNS"
        assert "sns.us-east-1.amazonaws.com" in excinfo.value.reason

    def test_client_built_with_explicit_credentials_and_no_sdk_retries(self):
        with patch("backend.app.notifications.backends.aws_providers.boto3.client") as factory:
            make_aws_client("ses", "AKIAEXAMPLE", "secret", "eu-west-1", timeout_seconds=15)

        args, kwargs = factory.call_args
        assert args == ("ses",)
        assert kwargs["region_name"] == "eu-west-1"
        assert kwargs["aws_access_key_id"] == "AKIAEXAMPLE"
        assert kwargs["aws_secret_access_key"] == "secret"
        assert kwargs["config"].retries["max_attempts"] == 1
        assert kwargs["config"].read_timeout == 15
