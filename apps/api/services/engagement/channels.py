"""
Notification channel senders.

One sender per Channel variant:
- SmsSender: posts to the SMS gateway
- WebPushSender: posts to the web push gateway
- InAppSender: stores an InAppNotification row

A sender either returns normally (delivered) or raises ChannelError.
Retries and aggregation are the dispatcher's job.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from core.config import settings
from core.database import SessionLocal
from services.engagement.types import Channel

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Delivery over one channel failed."""

    retryable = True


class ChannelNotConfiguredError(ChannelError):
    retryable = False


class ChannelSender(ABC):
    channel: Channel

    @abstractmethod
    def send(self, client_id: str, title: str, body: str) -> None:
        """Deliver one notification or raise ChannelError."""


class GatewaySender(ChannelSender):
    """JSON POST to an HTTP notification gateway."""

    def __init__(self, url: Optional[str], api_key: Optional[str] = None, timeout_s: float = 10.0):
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s

    def payload(self, client_id: str, title: str, body: str) -> dict:
        return {"client_id": client_id, "title": title, "body": body}

    def send(self, client_id: str, title: str, body: str) -> None:
        if not self.url:
            raise ChannelNotConfiguredError(f"{self.channel.value} gateway is not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            r = requests.post(
                self.url,
                json=self.payload(client_id, title, body),
                headers=headers,
                timeout=self.timeout_s,
            )
            r.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            error = ChannelError(f"{self.channel.value} gateway returned {status}")
            # Client errors will not improve on retry
            if status is not None and 400 <= status < 500 and status != 429:
                error.retryable = False
            raise error from e
        except requests.exceptions.RequestException as e:
            raise ChannelError(f"{self.channel.value} gateway request failed: {e}") from e

        logger.debug(f"{self.channel.value} notification accepted for client {client_id}")


class SmsSender(GatewaySender):
    channel = Channel.SMS

    def payload(self, client_id: str, title: str, body: str) -> dict:
        # SMS has no title line
        return {"client_id": client_id, "message": body}


class WebPushSender(GatewaySender):
    channel = Channel.WEB_PUSH

    def payload(self, client_id: str, title: str, body: str) -> dict:
        return {
            "client_id": client_id,
            "notification": {"title": title, "body": body, "tag": "coach-message"},
        }


class InAppSender(ChannelSender):
    """Writes to the in-app inbox. Uses its own session so it is safe to call from a worker thread."""

    channel = Channel.IN_APP

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, notification_type: str = "coach_message"):
        self.session_factory = session_factory
        self.notification_type = notification_type

    def send(self, client_id: str, title: str, body: str) -> None:
        db = self.session_factory()
        try:
            db.add(models.InAppNotification(
                id=str(uuid.uuid4()),
                client_id=client_id,
                title=title,
                message=body,
                type=self.notification_type,
                is_read=False,
                created_at=datetime.now(timezone.utc),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise ChannelError(f"in-app notification write failed: {e}") from e
        finally:
            db.close()


@dataclass(frozen=True)
class ChannelHandlers:
    """Exactly one sender for each Channel."""
    sms: ChannelSender
    web_push: ChannelSender
    in_app: ChannelSender

    def handler_for(self, channel: Channel) -> ChannelSender:
        if channel == Channel.SMS:
            return self.sms
        elif channel == Channel.WEB_PUSH:
            return self.web_push
        elif channel == Channel.IN_APP:
            return self.in_app
        raise ValueError(f"Unknown channel: {channel}")


def default_channel_handlers() -> ChannelHandlers:
    timeout = settings.ENGAGEMENT_CHANNEL_TIMEOUT_S
    return ChannelHandlers(
        sms=SmsSender(settings.SMS_GATEWAY_URL, settings.SMS_GATEWAY_API_KEY, timeout),
        web_push=WebPushSender(settings.WEB_PUSH_GATEWAY_URL, settings.WEB_PUSH_GATEWAY_API_KEY, timeout),
        in_app=InAppSender(),
    )
