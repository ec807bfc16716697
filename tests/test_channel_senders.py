"""
Unit tests for channel senders.

Test Coverage:
- Shared retry loop: backoff, exhaustion, permanent failures, partial success
- Realtime delivery to online and offline users
- Push delivery and pruning of gone subscriptions
- Email batching and refused addresses
- SMS truncation and Twilio error classification
"""

import base64
import json
import os
import smtplib
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from pydantic import ValidationError as PydanticValidationError
from pywebpush import WebPushException
from twilio.base.exceptions import TwilioRestException

from weddingbell.app.core.exceptions import ChannelDeliveryError, PermanentDeliveryError
from weddingbell.app.core.pubsub import InMemoryPubSubBus
from weddingbell.app.models.domain.notification import Notification, Priority
from weddingbell.app.repositories.memory.user_repository import InMemoryUserRepository
from weddingbell.app.services.channels.base import ChannelSender, SendReport
from weddingbell.app.services.channels.email import EmailSender
from weddingbell.app.services.channels.push import PushSender
from weddingbell.app.services.channels.realtime import RealtimeSender
from weddingbell.app.services.channels.sms import SMSSender
from weddingbell.config.settings import EmailSettings, PushSettings, RetryPolicy, SMSSettings


def make_notification(**kwargs) -> Notification:
    defaults = {"type": "task_due", "title": "Tâche", "body": "Réserver le traiteur", "recipients": ["u1"]}
    defaults.update(kwargs)
    return Notification(**defaults)


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedSender(ChannelSender):
    """Sender whose attempts follow a script of per-recipient outcomes."""

    channel = "push"

    def __init__(self, script: List[Any], **kwargs):
        super().__init__(**kwargs)
        self.script = list(script)
        self.attempts: List[List[str]] = []

    async def send(self, notification, payload, recipients):
        self.attempts.append(list(recipients))
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        return step(recipients)


def fixed_policy(max_retries: int = 3, delay: float = 1.0) -> RetryPolicy:
    return RetryPolicy(max_retries=max_retries, retry_delay=delay, jitter=False)


class TestRetryLoop:
    """Test suite for the shared retry loop."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.sleep = RecordingSleep()
        self.notification = make_notification()

    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_backoff(self):
        """Transient failures are retried with doubling delays until success."""
        fail = lambda rs: SendReport().fail_all(rs, "timeout")
        succeed = lambda rs: SendReport(delivered=list(rs))
        sender = ScriptedSender([fail, fail, succeed], retry_policy=fixed_policy(), sleep=self.sleep)

        result = await sender.deliver(self.notification, {}, ["u1"])

        assert result.success
        assert result.retry_count == 2
        assert self.sleep.delays == [1.0, 2.0]
        assert result.delivered_to == ["u1"]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """After max_retries the channel fails without being permanent."""
        fail = lambda rs: SendReport().fail_all(rs, "503")
        sender = ScriptedSender([fail], retry_policy=fixed_policy(), sleep=self.sleep)

        result = await sender.deliver(self.notification, {}, ["u1"])

        assert not result.success
        assert not result.permanent
        assert result.retry_count == 3
        assert len(sender.attempts) == 4
        assert self.sleep.delays == [1.0, 2.0, 4.0]
        assert "u1: 503" in result.error

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self):
        """Permanent failures stop after the first attempt."""
        gone = lambda rs: SendReport().fail_all(rs, "gone", permanent=True)
        sender = ScriptedSender([gone], retry_policy=fixed_policy(), sleep=self.sleep)

        result = await sender.deliver(self.notification, {}, ["u1"])

        assert not result.success
        assert result.permanent
        assert result.retry_count == 0
        assert self.sleep.delays == []

    @pytest.mark.asyncio
    async def test_only_failed_recipients_are_retried(self):
        """Recipients that already received the payload are not sent it again."""
        first = lambda rs: SendReport(delivered=["u1"], retryable={"u2": "busy"})
        second = lambda rs: SendReport(delivered=list(rs))
        sender = ScriptedSender([first, second], retry_policy=fixed_policy(), sleep=self.sleep)

        result = await sender.deliver(self.notification, {}, ["u1", "u2"])

        assert sender.attempts == [["u1", "u2"], ["u2"]]
        assert result.delivered_to == ["u1", "u2"]
        assert result.error is None

    @pytest.mark.asyncio
    async def test_raised_errors_classified(self):
        """Raised delivery errors are retried; permanent and unknown ones are not."""
        transient = ScriptedSender(
            [ChannelDeliveryError("provider down"), lambda rs: SendReport(delivered=list(rs))],
            retry_policy=fixed_policy(),
            sleep=self.sleep
        )
        assert (await transient.deliver(self.notification, {}, ["u1"])).success

        permanent = ScriptedSender([PermanentDeliveryError("blocked")], retry_policy=fixed_policy(), sleep=self.sleep)
        result = await permanent.deliver(self.notification, {}, ["u1"])
        assert result.permanent
        assert len(permanent.attempts) == 1

        unknown = ScriptedSender([ValueError("bad payload")], retry_policy=fixed_policy(), sleep=self.sleep)
        result = await unknown.deliver(self.notification, {}, ["u1"])
        assert result.permanent
        assert len(unknown.attempts) == 1

    @pytest.mark.asyncio
    async def test_no_retries_policy(self):
        """A zero-retry policy makes a single attempt."""
        fail = lambda rs: SendReport().fail_all(rs, "offline")
        sender = ScriptedSender([fail], retry_policy=fixed_policy(max_retries=0), sleep=self.sleep)

        result = await sender.deliver(self.notification, {}, ["u1"])

        assert len(sender.attempts) == 1
        assert not result.success


class TestRealtimeSender:
    """Test suite for realtime delivery."""

    @pytest.mark.asyncio
    async def test_online_and_offline_recipients(self):
        """Online users get a notification frame; offline users fail permanently."""
        bus = InMemoryPubSubBus()
        received: List[Dict[str, Any]] = []

        async def handler(channel, message):
            received.append(message)

        await bus.subscribe("user:u1", handler)
        sender = RealtimeSender(bus, retry_policy=fixed_policy(max_retries=0))
        notification = make_notification(recipients=["u1", "u2"], priority=Priority.HIGH)

        result = await sender.deliver(
            notification,
            {"title": "Rappel", "message": "Demain", "severity": "warning", "actions": []},
            ["u1", "u2"]
        )

        assert result.success
        assert result.delivered_to == ["u1"]
        assert "u2: recipient offline" in result.error
        assert received[0]["type"] == "notification"
        assert received[0]["data"]["id"] == notification.id
        assert received[0]["data"]["title"] == "Rappel"
        assert received[0]["data"]["priority"] == "high"
        assert received[0]["data"]["severity"] == "warning"


def b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def make_subscription(endpoint: str) -> Dict[str, Any]:
    """A browser subscription with real P-256 and auth keys."""
    key = ec.generate_private_key(ec.SECP256R1())
    public = key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return {"endpoint": endpoint, "keys": {"p256dh": b64url(public), "auth": b64url(os.urandom(16))}}


def make_vapid_key() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return b64url(key.private_numbers().private_value.to_bytes(32, "big"))


class FakeResponse:
    def __init__(self, status_code: int, headers: Dict[str, str] = None):
        self.status_code = status_code
        self.headers = headers or {}
        self.reason = ""
        self.text = ""


class FakePushService:
    """Stand-in for ``pywebpush.webpush`` answering with a status per endpoint."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.statuses: Dict[str, int] = {}

    def __call__(self, subscription_info, data, **kwargs):
        self.calls.append({"endpoint": subscription_info["endpoint"], "data": json.loads(data), **kwargs})
        response = FakeResponse(self.statuses.get(subscription_info["endpoint"], 201))
        if response.status_code > 202:
            raise WebPushException(f"Push failed: {response.status_code}", response=response)
        return response


class RecordingSession:
    """Requests session that records what the push library posts."""

    def __init__(self):
        self.posts: List[Dict[str, Any]] = []

    def post(self, url, data=None, headers=None, timeout=None, **kwargs):
        self.posts.append({
            "url": url,
            "data": data,
            "headers": {key.lower(): value for key, value in (headers or {}).items()},
        })
        return FakeResponse(201, headers={"location": "https://push.example/messages/1"})


class TestPushSender:
    """Test suite for push delivery."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.users = InMemoryUserRepository()
        self.service = FakePushService()
        self.settings = PushSettings(vapid_private_key=make_vapid_key())
        self.sender = PushSender(
            self.users,
            self.settings,
            retry_policy=fixed_policy(max_retries=1),
            push=self.service,
            sleep=RecordingSleep()
        )

    @pytest.mark.asyncio
    async def test_pushes_to_every_subscription(self):
        """Each subscription receives the payload signed with the VAPID key."""
        await self.users.add_push_subscription("u1", make_subscription("https://push.example/a"))
        await self.users.add_push_subscription("u1", make_subscription("https://push.example/b"))
        notification = make_notification(priority=Priority.CRITICAL)

        result = await self.sender.deliver(notification, {"title": "Alerte", "body": "Paiement refusé"}, ["u1"])

        assert result.success
        assert [call["endpoint"] for call in self.service.calls] == ["https://push.example/a", "https://push.example/b"]
        call = self.service.calls[0]
        assert call["data"]["title"] == "Alerte"
        assert call["data"]["requireInteraction"] is True
        assert call["vapid_private_key"] == self.settings.vapid_private_key
        assert call["vapid_claims"] == {"sub": "mailto:noreply@attitudes.vip"}
        assert call["ttl"] == 86400

    @pytest.mark.asyncio
    async def test_request_is_encrypted_and_signed(self):
        """Outgoing requests carry a VAPID authorization and an aes128gcm body."""
        session = RecordingSession()
        sender = PushSender(self.users, self.settings, session=session, sleep=RecordingSleep())
        await self.users.add_push_subscription("u1", make_subscription("https://push.example/a"))

        result = await sender.deliver(make_notification(), {"title": "Alerte", "body": "Paiement refusé"}, ["u1"])

        assert result.success
        assert result.message_ids == ["https://push.example/messages/1"]
        post = session.posts[0]
        assert post["url"] == "https://push.example/a"
        assert post["headers"]["content-encoding"] == "aes128gcm"
        assert "t=" in post["headers"]["authorization"]
        assert post["headers"]["ttl"] == "86400"
        assert b"Alerte" not in post["data"]

    @pytest.mark.asyncio
    async def test_gone_subscription_pruned(self):
        """A 410 removes the subscription and is never retried."""
        await self.users.add_push_subscription("u1", make_subscription("https://push.example/old"))
        self.service.statuses["https://push.example/old"] = 410

        result = await self.sender.deliver(make_notification(), {"title": "x"}, ["u1"])

        assert not result.success
        assert result.permanent
        assert len(self.service.calls) == 1
        assert await self.users.get_push_subscriptions("u1") == []

    @pytest.mark.asyncio
    async def test_rejected_request_not_retried(self):
        """Other 4xx answers fail permanently but keep the subscription."""
        await self.users.add_push_subscription("u1", make_subscription("https://push.example/a"))
        self.service.statuses["https://push.example/a"] = 403

        result = await self.sender.deliver(make_notification(), {"title": "x"}, ["u1"])

        assert result.permanent
        assert len(self.service.calls) == 1
        assert len(await self.users.get_push_subscriptions("u1")) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        """A 5xx from the push service is transient."""
        await self.users.add_push_subscription("u1", make_subscription("https://push.example/busy"))
        self.service.statuses["https://push.example/busy"] = 503

        result = await self.sender.deliver(make_notification(), {"title": "x"}, ["u1"])

        assert not result.success
        assert not result.permanent
        assert len(self.service.calls) == 2
        assert len(await self.users.get_push_subscriptions("u1")) == 1

    @pytest.mark.asyncio
    async def test_user_without_subscription(self):
        """Users who never subscribed, or only left keyless entries, fail permanently."""
        await self.users.add_push_subscription("u2", {"endpoint": "https://push.example/nokeys"})

        result = await self.sender.deliver(make_notification(), {"title": "x"}, ["u9", "u2"])

        assert set(result.permanent) == {"u9", "u2"}
        assert self.service.calls == []

    @pytest.mark.asyncio
    async def test_missing_vapid_key(self):
        """Without a VAPID key nothing is sent and nothing is retried."""
        sender = PushSender(self.users, PushSettings(), push=self.service, sleep=RecordingSleep())
        await self.users.add_push_subscription("u1", make_subscription("https://push.example/a"))

        result = await sender.deliver(make_notification(), {"title": "x"}, ["u1"])

        assert result.permanent
        assert self.service.calls == []


class FakeSMTP:
    """Context-managed stand-in for ``smtplib.SMTP``."""

    instances: List["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent: List[List[str]] = []
        self.tls = False
        self.login_args = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def starttls(self):
        self.tls = True

    def login(self, user, password):
        self.login_args = (user, password)

    def send_message(self, message, to_addrs=None):
        self.sent.append(list(to_addrs))
        return {address: (550, b"mailbox unavailable") for address in to_addrs if address.startswith("bad")}


class TestEmailSender:
    """Test suite for email delivery."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        FakeSMTP.instances = []
        self.users = InMemoryUserRepository()
        self.settings = EmailSettings(smtp_user="mailer", smtp_password="secret", batch_size=50)
        self.sender = EmailSender(
            self.users,
            settings=self.settings,
            retry_policy=fixed_policy(),
            smtp_factory=FakeSMTP,
            sleep=RecordingSleep()
        )

    @pytest.mark.asyncio
    async def test_recipients_sent_in_bcc_batches(self):
        """120 recipients go out in batches of 50, 50 and 20."""
        recipients = []
        for i in range(120):
            await self.users.upsert_user(f"u{i}", {"email": f"guest{i}@example.com"})
            recipients.append(f"u{i}")

        result = await self.sender.deliver(
            make_notification(recipients=recipients, wedding_id="w42"),
            {"subject": "Invitation", "html": "<p>Bienvenue</p>", "text": "Bienvenue"},
            recipients
        )

        assert result.success
        assert len(result.delivered_to) == 120
        assert [len(batch) for smtp in FakeSMTP.instances for batch in smtp.sent] == [50, 50, 20]
        assert all(smtp.tls and smtp.login_args == ("mailer", "secret") for smtp in FakeSMTP.instances)
        assert len(result.message_ids) == 1

    def test_message_headers(self):
        """Messages hide recipients and carry tracking headers."""
        notification = make_notification(wedding_id="w42")
        message = self.sender.build_message(notification, {
            "subject": "Invitation",
            "text": "Bienvenue",
            "html": "<p>Bienvenue</p>",
            "headers": {"X-Priority": "1"},
        })

        assert message["Subject"] == "Invitation"
        assert "Undisclosed recipients" in message["To"]
        assert message["X-Message-ID"] == notification.id
        assert message["X-Wedding-ID"] == "w42"
        assert message["X-Priority"] == "1"
        assert message.is_multipart()

    @pytest.mark.asyncio
    async def test_refused_and_missing_addresses_are_permanent(self):
        """Refused addresses and users without email are not retried."""
        await self.users.upsert_user("good", {"email": "good@example.com"})
        await self.users.upsert_user("bad", {"email": "bad@example.com"})

        result = await self.sender.deliver(make_notification(), {"subject": "x", "text": "x"}, ["good", "bad", "ghost"])

        assert result.delivered_to == ["good"]
        assert "bad: address refused" in result.error
        assert "ghost: no email address" in result.error
        assert len(FakeSMTP.instances) == 1

    @pytest.mark.asyncio
    async def test_smtp_outage_retried(self):
        """SMTP connection errors fail the batch transiently."""
        await self.users.upsert_user("u1", {"email": "u1@example.com"})
        sender = EmailSender(
            self.users,
            settings=self.settings,
            retry_policy=fixed_policy(max_retries=2),
            smtp_factory=Mock(side_effect=smtplib.SMTPConnectError(421, b"try later")),
            sleep=RecordingSleep()
        )

        result = await sender.deliver(make_notification(), {"subject": "x", "text": "x"}, ["u1"])

        assert not result.success
        assert not result.permanent
        assert result.retry_count == 2


class TestSMSSender:
    """Test suite for SMS delivery."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.users = InMemoryUserRepository()
        self.client = Mock()
        self.client.messages.create.return_value = Mock(sid="SM123")
        self.sender = SMSSender(
            self.users,
            settings=SMSSettings(from_number="+33100000000"),
            retry_policy=fixed_policy(),
            client=self.client,
            sleep=RecordingSleep()
        )

    @pytest.mark.asyncio
    async def test_text_sent_and_truncated(self):
        """Texts over 160 characters are cut before sending."""
        await self.users.upsert_user("u1", {"phone": "+33612345678"})

        result = await self.sender.deliver(make_notification(), {"text": "x" * 200}, ["u1"])

        assert result.success
        assert result.message_ids == ["SM123"]
        kwargs = self.client.messages.create.call_args.kwargs
        assert kwargs["to"] == "+33612345678"
        assert kwargs["from_"] == "+33100000000"
        assert len(kwargs["body"]) == 160
        assert kwargs["body"].endswith("...")

    @pytest.mark.asyncio
    async def test_invalid_number_is_permanent(self):
        """Twilio invalid-number errors are never retried."""
        await self.users.upsert_user("u1", {"phone": "+000"})
        self.client.messages.create.side_effect = TwilioRestException(400, "/Messages", msg="Invalid To", code=21211)

        result = await self.sender.deliver(make_notification(), {"text": "hi"}, ["u1"])

        assert result.permanent
        assert self.client.messages.create.call_count == 1

    @pytest.mark.asyncio
    async def test_provider_error_is_retried(self):
        """Other Twilio errors are retried up to the policy limit."""
        await self.users.upsert_user("u1", {"phone": "+33612345678"})
        self.client.messages.create.side_effect = TwilioRestException(500, "/Messages", msg="Internal", code=20500)

        result = await self.sender.deliver(make_notification(), {"text": "hi"}, ["u1"])

        assert not result.success
        assert not result.permanent
        assert self.client.messages.create.call_count == 4

    @pytest.mark.asyncio
    async def test_missing_phone_and_credentials(self):
        """No phone number, or no Twilio credentials, is a permanent failure."""
        result = await self.sender.deliver(make_notification(), {"text": "hi"}, ["nobody"])
        assert result.permanent

        await self.users.upsert_user("u1", {"phone": "+33612345678"})
        unconfigured = SMSSender(self.users, retry_policy=fixed_policy(), sleep=RecordingSleep())
        result = await unconfigured.deliver(make_notification(), {"text": "hi"}, ["u1"])
        assert result.permanent

    def test_max_length_bounded_to_one_segment(self):
        """The configured limit must leave room for the ellipsis and fit one segment."""
        assert SMSSettings(max_length=70).max_length == 70

        with pytest.raises(PydanticValidationError):
            SMSSettings(max_length=200)
        with pytest.raises(PydanticValidationError):
            SMSSettings(max_length=3)
