import dataclasses
import json

import httpx
import pytest

from coffee_monitor.aggregator import (
    FAVORITE_AVAILABLE,
    PREFERENCE_MATCH,
    MatchInfo,
    VariantAggregator,
)
from coffee_monitor.notifier import (
    DESKTOP,
    EMAIL,
    TELEGRAM,
    DesktopConfig,
    EmailConfig,
    NotificationConfig,
    Notifier,
    TelegramConfig,
    candidate_message,
    format_price,
    new_products_message,
)


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        self.tls_upgraded = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return True

    def starttls(self):
        self.tls_upgraded = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, message):
        self.sent.append(message)


EMAIL_CONFIG = EmailConfig(
    enabled=True,
    host="smtp.example.com",
    user="bot@example.com",
    password="secret",
    recipients=("me@example.com",),
)
TELEGRAM_CONFIG = TelegramConfig(enabled=True, bot_token="123:abc", chat_id="42")


def favorite_candidate(observe):
    aggregator = VariantAggregator()
    match = MatchInfo(FAVORITE_AVAILABLE, "Kenya", matched_terms=("kenya",))
    aggregator.add(observe("Kenya Nyeri 250g", price=169.0), 1, match)
    aggregator.add(observe("Kenya Nyeri 1kg", price=549.5), 2, match)
    return aggregator.candidates()[0]


def test_format_price():
    assert format_price(169.0) == "169 kr"
    assert format_price(100.0) == "100 kr"
    assert format_price(149.5) == "149.5 kr"
    assert format_price(None) == ""


def test_candidate_message_lists_sizes_and_terms(observe):
    message = candidate_message(favorite_candidate(observe))
    assert message.title == "☕ Favorite coffee available: Kenya Nyeri"
    assert "Sizes: 250g: 169 kr; 1kg: 549.5 kr" in message.text
    assert "Matched terms: kenya" in message.text


def test_preference_message_shows_score(observe):
    aggregator = VariantAggregator()
    aggregator.add(
        observe("Guji 250g"),
        1,
        MatchInfo(PREFERENCE_MATCH, "preferences", score=15, reasons=("country:ethiopia+10",)),
    )
    message = candidate_message(aggregator.candidates()[0])
    assert message.title.startswith("☕ Matching coffee available")
    assert "Score: 15" in message.text
    assert "country:ethiopia+10" in message.text


def test_new_products_message(observe):
    message = new_products_message([observe("Guji"), observe("Nyeri")])
    assert message.title == "☕ 2 new coffee products"
    assert "Guji (Kaffebrenneriet)" in message.text


@pytest.mark.asyncio
async def test_email_and_telegram_delivery(logger, observe):
    FakeSMTP.instances.clear()
    posted = []

    def handler(request):
        posted.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = Notifier(
            NotificationConfig(email=EMAIL_CONFIG, telegram=TELEGRAM_CONFIG),
            logger,
            http_client=client,
            smtp_factory=FakeSMTP,
        )
        results = await notifier.notify_candidate(favorite_candidate(observe))

    assert [(r.channel, r.success) for r in results] == [(EMAIL, True), (TELEGRAM, True)]
    [smtp] = FakeSMTP.instances
    assert smtp.logged_in == ("bot@example.com", "secret")
    [mail] = smtp.sent
    assert mail["To"] == "me@example.com"
    assert mail["Subject"] == "☕ Favorite coffee available: Kenya Nyeri"
    [(url, payload)] = posted
    assert url.startswith("https://api.telegram.org/bot")
    assert url.endswith("/sendMessage")
    assert payload["chat_id"] == "42"
    assert payload["parse_mode"] == "HTML"


@pytest.mark.asyncio
async def test_secure_email_uses_ssl_connection(logger, observe):
    FakeSMTP.instances.clear()

    def plain_smtp(*args, **kwargs):
        raise AssertionError("plain SMTP used for a secure server")

    notifier = Notifier(
        NotificationConfig(email=dataclasses.replace(EMAIL_CONFIG, secure=True, port=465)),
        logger,
        smtp_factory=plain_smtp,
        smtp_ssl_factory=FakeSMTP,
    )
    [result] = await notifier.notify_candidate(favorite_candidate(observe))

    assert (result.channel, result.success) == (EMAIL, True)
    [smtp] = FakeSMTP.instances
    assert smtp.port == 465
    assert not smtp.tls_upgraded
    assert smtp.logged_in == ("bot@example.com", "secret")
    assert len(smtp.sent) == 1


@pytest.mark.asyncio
async def test_channel_failure_is_reported_not_raised(logger, observe):
    def handler(request):
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = Notifier(
            NotificationConfig(telegram=TELEGRAM_CONFIG), logger, http_client=client
        )
        [result] = await notifier.notify_error(RuntimeError("boom"), "Product check failed")

    assert result.channel == TELEGRAM
    assert not result.success
    assert result.error


@pytest.mark.asyncio
async def test_disabled_channels_are_skipped(logger, observe):
    notifier = Notifier(NotificationConfig(), logger)
    assert notifier.enabled_channels == []
    assert await notifier.notify_candidate(favorite_candidate(observe)) == []
    assert await notifier.notify_new_products([]) == []


@pytest.mark.asyncio
async def test_new_products_and_errors_skip_desktop(logger, observe):
    calls = []

    class RecordingNotifier(Notifier):
        async def _send_desktop(self, message):
            calls.append(DESKTOP)

        async def _send_telegram(self, message):
            calls.append(TELEGRAM)

    notifier = RecordingNotifier(
        NotificationConfig(telegram=TELEGRAM_CONFIG, desktop=DesktopConfig(enabled=True)),
        logger,
    )
    await notifier.notify_new_products([observe("Guji")])
    await notifier.notify_error(RuntimeError("boom"), "")
    assert calls == [TELEGRAM, TELEGRAM]

    await notifier.notify_candidate(favorite_candidate(observe))
    assert calls[-2:] == [TELEGRAM, DESKTOP]
