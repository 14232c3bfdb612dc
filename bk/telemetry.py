"""
Telemetry emitter.

Backup summaries are forwarded to a receiver as signed state messages:
POST {telemetry_url}/emit with {kind, hostname, fingerprint, payload, signature}.
Delivery is best effort; failures are logged and never affect the backup.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from bk.config import Config
from bk.utils.hostkey import HostIdentity, HostKeyError


logger = logging.getLogger(__name__)


class TelemetryEmitter:
    """Sends state messages to the telemetry receiver."""

    def __init__(self, url: Optional[str], identity: HostIdentity, settings=None):
        """
        Args:
            url: Receiver base URL (None disables telemetry)
            identity: Machine identity used for fingerprint and signature
            settings: Config class (default: Config)
        """
        self.url = url.rstrip('/') if url else None
        self.identity = identity
        self.settings = settings or Config

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def backup_summary(self, paths: List[str], target: str, status: str, summary: Dict[str, Any]):
        """Forward the summary of one backup run on one target."""
        self.emit('backup_summary', {
            'paths': paths,
            'target': target,
            'status': status,
            'summary': summary,
        })

    def emit(self, kind: str, event: Dict[str, Any]) -> bool:
        """
        Send one event.

        Returns:
            True if the receiver accepted it
        """
        if not self.enabled:
            return False

        payload = json.dumps(event, sort_keys=True, default=str)

        try:
            fingerprint = self.identity.fingerprint
        except HostKeyError as e:
            logger.warning(f"Telemetry without fingerprint: {e}")
            fingerprint = ''

        try:
            signature = self.identity.sign(payload.encode())
        except HostKeyError as e:
            logger.debug(f"Telemetry payload left unsigned: {e}")
            signature = ''

        message = {
            'kind': kind,
            'hostname': self.identity.hostname,
            'fingerprint': fingerprint,
            'payload': payload,
            'signature': signature,
        }

        try:
            response = requests.post(
                f"{self.url}/emit",
                json=message,
                timeout=self.settings.HTTP_TIMEOUT
            )
        except requests.RequestException as e:
            logger.error(f"Telemetry POST {self.url}/emit failed: {e}")
            return False

        logger.info(f"Telemetry POST {self.url}/emit => {response.status_code}")
        return response.ok
