"""
SMS gateway client used to deliver voucher credentials
"""

import base64
import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


class NotificationSender:
    """Anything that can deliver a text message to an E.164 number."""

    def send(self, recipient, content) -> bool:
        raise NotImplementedError


class SMSGatewayClient(NotificationSender):
    """
    HTTP SMS gateway client (Basic auth, JSON body).

    send() returns True only when the gateway accepted the message.
    """

    def __init__(self, username=None, password=None, sender_id=None, api_url=None, timeout=10):
        self.username = username if username is not None else settings.SMS_USERNAME
        self.password = password if password is not None else settings.SMS_PASSWORD
        self.sender_id = sender_id or settings.SMS_SENDER_ID
        self.api_url = api_url or settings.SMS_API_URL
        self.timeout = timeout

        # Create Basic Auth token
        credentials = f"{self.username}:{self.password}"
        self.auth_token = base64.b64encode(credentials.encode()).decode()

    def is_configured(self):
        return bool(self.username and self.password and self.api_url)

    def send(self, recipient, content) -> bool:
        if not self.is_configured():
            logger.error("SMS gateway credentials are not configured; message not sent")
            return False

        headers = {
            "Authorization": f"Basic {self.auth_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload = {
            "from": self.sender_id,
            # Gateway expects digits only
            "to": recipient.lstrip("+"),
            "text": content,
        }

        try:
            response = requests.post(
                self.api_url, json=payload, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send SMS to {recipient}: {str(e)}")
            if getattr(e, "response", None) is not None:
                logger.error(f"Response: {e.response.text}")
            return False

        logger.info(f"SMS sent successfully to {recipient}")
        return True
