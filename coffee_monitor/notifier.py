from __future__ import annotations

import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Callable, Optional, Sequence

import httpx

from .aggregator import PREFERENCE_MATCH, NotificationCandidate
from .models import RawObservation

NEW_PRODUCTS = "new_products"
ERROR = "error"

EMAIL = "email"
TELEGRAM = "telegram"
DESKTOP = "desktop"

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
APP_NAME = "Coffee Monitor"


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    host: str = ""
    port: int = 587
    secure: bool = False
    user: str = ""
    password: str = ""
    sender: str = ""
    recipients: tuple[str, ...] = ()


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class DesktopConfig:
    enabled: bool = False


@dataclass(frozen=True)
class NotificationConfig:
    email: EmailConfig = field(default_factory=EmailConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    desktop: DesktopConfig = field(default_factory=DesktopConfig)


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class Message:
    title: str
    text: str
    html: str


def format_price(price: Optional[float]) -> str:
    if price is None:
        return ""
    return f"{price:.2f}".rstrip("0").rstrip(".") + " kr"


def _sizes_lines(candidate: NotificationCandidate) -> list[str]:
    lines = []
    for size in candidate.available_sizes:
        offer = candidate.size_data.get(size)
        price = format_price(offer.price) if offer else ""
        lines.append(f"{size}: {price}" if price else size)
    return lines


def _product_lines(observation: RawObservation) -> list[str]:
    lines = [f"{observation.name} ({observation.roastery_name})"]
    if observation.price is not None:
        lines.append(f"Price: {format_price(observation.price)}")
    if observation.url:
        lines.append(f"URL: {observation.url}")
    return lines


def _html_block(lines: Sequence[str]) -> str:
    return "<br>".join(html.escape(line) for line in lines)


def candidate_message(candidate: NotificationCandidate) -> Message:
    product = candidate.product
    match = candidate.match
    if candidate.notification_type == PREFERENCE_MATCH:
        title = f"☕ Matching coffee available: {candidate.base_name}"
        why = [f"Score: {match.score:g}"] if match.score is not None else []
        if match.reasons:
            why.append("Reasons: " + ", ".join(match.reasons))
    else:
        title = f"☕ Favorite coffee available: {candidate.base_name}"
        why = [f"Favorite: {match.label}"]
        if match.matched_terms:
            why.append("Matched terms: " + ", ".join(match.matched_terms))
    lines = _product_lines(product)
    if product.organic:
        lines.append("Organic")
    sizes = _sizes_lines(candidate)
    if sizes:
        lines.append("Sizes: " + "; ".join(sizes))
    lines.extend(why)
    return Message(title=title, text="\n".join(lines), html=_html_block(lines))


def new_products_message(observations: Sequence[RawObservation]) -> Message:
    title = f"☕ {len(observations)} new coffee products"
    lines: list[str] = []
    for observation in observations:
        lines.extend(_product_lines(observation))
        lines.append("")
    text = "\n".join(lines).strip()
    return Message(title=title, text=text, html=_html_block(text.splitlines()))


def error_message(error: BaseException, context: str) -> Message:
    lines = [f"Error: {error}"]
    if context:
        lines.append(f"Context: {context}")
    return Message(
        title=f"⚠️ {APP_NAME} error",
        text="\n".join(lines),
        html=_html_block(lines),
    )


class Notifier:
    """Delivers messages to the configured channels, once, without retries."""

    def __init__(
        self,
        config: NotificationConfig,
        logger: logging.Logger,
        http_client: Optional[httpx.AsyncClient] = None,
        smtp_factory: Callable[..., Any] = smtplib.SMTP,
        smtp_ssl_factory: Callable[..., Any] = smtplib.SMTP_SSL,
        timeout_s: float = 20.0,
    ) -> None:
        self.config = config
        self._logger = logger
        self._http_client = http_client
        self._smtp_factory = smtp_factory
        self._smtp_ssl_factory = smtp_ssl_factory
        self._timeout_s = timeout_s

    @property
    def enabled_channels(self) -> list[str]:
        channels = []
        if self.config.email.enabled:
            channels.append(EMAIL)
        if self.config.telegram.enabled:
            channels.append(TELEGRAM)
        if self.config.desktop.enabled:
            channels.append(DESKTOP)
        return channels

    async def notify_candidate(self, candidate: NotificationCandidate) -> list[ChannelResult]:
        return await self.send(
            candidate.notification_type,
            candidate_message(candidate),
            (EMAIL, TELEGRAM, DESKTOP),
        )

    async def notify_new_products(
        self, observations: Sequence[RawObservation]
    ) -> list[ChannelResult]:
        if not observations:
            return []
        return await self.send(
            NEW_PRODUCTS, new_products_message(observations), (EMAIL, TELEGRAM)
        )

    async def notify_error(self, error: BaseException, context: str) -> list[ChannelResult]:
        return await self.send(ERROR, error_message(error, context), (EMAIL, TELEGRAM))

    async def send(
        self, notification_type: str, message: Message, channels: Sequence[str]
    ) -> list[ChannelResult]:
        senders = {
            EMAIL: (self.config.email.enabled, self._send_email),
            TELEGRAM: (self.config.telegram.enabled, self._send_telegram),
            DESKTOP: (self.config.desktop.enabled, self._send_desktop),
        }
        results: list[ChannelResult] = []
        for channel in channels:
            enabled, sender = senders[channel]
            if not enabled:
                continue
            try:
                await sender(message)
            except Exception as exc:
                self._logger.warning(
                    "%s notification via %s failed: %s", notification_type, channel, exc
                )
                results.append(ChannelResult(channel, False, str(exc)))
            else:
                self._logger.info("%s notification sent via %s", notification_type, channel)
                results.append(ChannelResult(channel, True))
        return results

    def _build_email(self, message: Message) -> EmailMessage:
        email = self.config.email
        mail = EmailMessage()
        mail["Subject"] = message.title
        mail["From"] = email.sender or email.user
        mail["To"] = ", ".join(email.recipients)
        mail.set_content(f"{message.text}\n\nSent by {APP_NAME}")
        mail.add_alternative(
            f"<h2>{html.escape(message.title)}</h2><p>{message.html}</p>"
            f"<p><small>Sent by {APP_NAME}</small></p>",
            subtype="html",
        )
        return mail

    def _send_email_sync(self, message: Message) -> None:
        email = self.config.email
        if not email.host or not email.recipients:
            raise ValueError("email host and recipients are required")
        factory = self._smtp_ssl_factory if email.secure else self._smtp_factory
        smtp = factory(email.host, email.port, timeout=self._timeout_s)
        with smtp:
            if not email.secure:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
            if email.user:
                smtp.login(email.user, email.password)
            smtp.send_message(self._build_email(message))

    async def _send_email(self, message: Message) -> None:
        await asyncio.to_thread(self._send_email_sync, message)

    async def _send_telegram(self, message: Message) -> None:
        telegram = self.config.telegram
        if not telegram.bot_token or not telegram.chat_id:
            raise ValueError("telegram bot token and chat id are required")
        payload = {
            "chat_id": telegram.chat_id,
            "text": f"<b>{html.escape(message.title)}</b>\n\n{html.escape(message.text)}",
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        url = TELEGRAM_API_URL.format(token=telegram.bot_token)
        if self._http_client is not None:
            response = await self._http_client.post(url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(url, json=payload)
        response.raise_for_status()

    async def _send_desktop(self, message: Message) -> None:
        process = await asyncio.create_subprocess_exec(
            "notify-send",
            message.title,
            message.text.splitlines()[0] if message.text else "",
            "--icon=dialog-information",
            f"--app-name={APP_NAME}",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            raise RuntimeError(
                stderr.decode("utf-8", "replace").strip()
                or f"notify-send exited with {process.returncode}"
            )
