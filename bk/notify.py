"""
Notification dispatch over ntfy.

A message is a plain-text POST to `{host}/{topic}`, optionally with basic
auth. Fire and forget: failures are logged, never raised.
"""

import logging
from typing import Dict, Iterable, Optional, Tuple

import requests

from bk.config import Config
from bk.errors import MissingCredentialError
from bk.models import NotificationChannel, NtfyConfiguration
from bk.backup.credentials import read_secret


logger = logging.getLogger(__name__)


def ntfy_auth(conf: NtfyConfiguration) -> Optional[Tuple[str, str]]:
    """
    Raises:
        MissingCredentialError: If auth is configured without a usable password
    """
    if conf.auth is None:
        return None

    password = read_secret(conf.auth.password, conf.auth.pass_file, 'ntfy password')
    if password is None:
        raise MissingCredentialError(f"Neither pass nor pass_file provided for ntfy user {conf.auth.user}")
    return conf.auth.user, password


class NotificationDispatcher:
    """Sends messages to the notification channels declared in the config."""

    def __init__(self, channels: Dict[str, NotificationChannel], settings=None):
        self.channels = channels
        self.settings = settings or Config

    def send(self, channel_names: Iterable[str], message: str):
        """Send a message to each named channel."""
        for name in channel_names:
            channel = self.channels.get(name)
            if channel is None:
                logger.warning(f"Unknown notification channel {name}")
                continue
            if channel.ntfy is not None:
                self._send_ntfy(name, channel.ntfy, message)

    def _send_ntfy(self, name: str, conf: NtfyConfiguration, message: str):
        url = f"{conf.host.rstrip('/')}/{conf.topic}"

        try:
            auth = ntfy_auth(conf)
            response = requests.post(
                url,
                data=message.encode('utf-8'),
                auth=auth,
                timeout=self.settings.HTTP_TIMEOUT
            )
        except (requests.RequestException, MissingCredentialError) as e:
            logger.error(f"Notification to {name} failed: {e}")
            return

        logger.info(f"NTFY POST {url} => {response.status_code}")
