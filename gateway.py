#!/usr/bin/env python3
"""
Notification Gateway

Outbound delivery for greetings. The dispatch loop only depends on the
``NotificationGateway.send`` contract; ``TwilioGateway`` is the SMS
implementation. When no gateway is configured sends are simulated so
scheduling keeps working offline.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

logger = logging.getLogger(__name__)

TRIAL_RESTRICTION_STATUSES = (400, 403)


@dataclass
class SendResult:
    """Outcome of a single send attempt"""
    success: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


class NotificationGateway:
    """Delivery provider contract used by the dispatch loop"""

    name = "gateway"

    async def send(self, address: str, body: str) -> SendResult:
        raise NotImplementedError


def simulated_send(address: str, body: str) -> SendResult:
    """Pretend to send; used when no gateway is available"""
    logger.info(f"[SIMULATED] Greeting to {address}: {body}")
    return SendResult(success=True, provider_id=f"SIM_{int(time.time() * 1000)}")


class TwilioGateway(NotificationGateway):
    """Sends greetings as SMS through a Twilio messaging service"""

    name = "twilio"

    def __init__(self, account_sid: str, auth_token: str, messaging_service_sid: str,
                 client: Optional[Client] = None):
        self.messaging_service_sid = messaging_service_sid
        self.client = client or Client(account_sid, auth_token)

    def _create_message(self, address: str, body: str) -> Optional[str]:
        message = self.client.messages.create(
            to=address,
            body=body,
            messaging_service_sid=self.messaging_service_sid,
        )
        return getattr(message, 'sid', None)

    async def send(self, address: str, body: str) -> SendResult:
        try:
            # The Twilio client is blocking; keep it off the event loop
            sid = await asyncio.to_thread(self._create_message, address, body)
        except TwilioRestException as e:
            logger.error(f"API error sending SMS to {address}: {e.status} {e.msg}")
            if e.status in TRIAL_RESTRICTION_STATUSES:
                return SendResult(
                    success=False,
                    error=(f"SMS failed ({e.status}): This may be a trial account restriction. "
                           f"Ensure the recipient number is verified in your account. {e.msg}"),
                )
            return SendResult(success=False, error=f"SMS API error ({e.status}): {e.msg}")

        if not sid:
            return SendResult(success=False, error="No message SID in gateway response")

        logger.info(f"SMS sent to {address}, SID: {sid}")
        return SendResult(success=True, provider_id=sid)


def gateway_from_config(config) -> Optional[NotificationGateway]:
    """Build the configured gateway, or None to run in simulated mode"""
    twilio = config.twilio
    if not twilio.is_configured():
        logger.warning("Twilio credentials not configured; greetings will be simulated")
        return None
    return TwilioGateway(twilio.account_sid, twilio.auth_token, twilio.messaging_service_sid)
