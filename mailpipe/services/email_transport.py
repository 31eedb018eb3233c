"""
Outbound email transports.

A transport turns an OutboundMessage into a SendOutcome. Transports never raise
for a per-recipient rejection; they raise TransientSendFailure only when the
provider could not be reached at all.
"""
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests
from requests.exceptions import ConnectionError, RequestException, Timeout

from mailpipe.exceptions import ConfigurationError, TransientSendFailure
from mailpipe.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class OutboundMessage:
    to: str
    subject: str
    html_body: str
    text_body: Optional[str] = None
    from_address: Optional[str] = None
    tag: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class SendOutcome:
    success: bool
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def failed(cls, error_code, error_message):
        return cls(success=False, error_code=str(error_code), error_message=error_message)


class EmailTransport:
    """Send capability used by the dispatch scheduler."""

    name = "base"

    def send(self, message: OutboundMessage) -> SendOutcome:
        return self.send_batch([message])[0]

    def send_batch(self, messages: List[OutboundMessage]) -> List[SendOutcome]:
        """One outcome per message, in the same order."""
        raise NotImplementedError


class LogOnlyTransport(EmailTransport):
    """Logs messages instead of sending them (SKIP_REAL_EMAIL_SENDING)."""

    name = "log_only"

    def __init__(self):
        self.sent: List[OutboundMessage] = []

    def send_batch(self, messages):
        outcomes = []
        for message in messages:
            self.sent.append(message)
            message_id = f"local-{uuid.uuid4()}"
            logger.info("Email send skipped", to=message.to, subject=message.subject,
                        tag=message.tag, provider_message_id=message_id)
            outcomes.append(SendOutcome(success=True, provider_message_id=message_id))
        return outcomes


class PostmarkTransport(EmailTransport):
    """Postmark HTTP API using a reusable requests session."""

    name = "postmark"

    def __init__(self, server_token, from_address, api_url="https://api.postmarkapp.com", timeout=30):
        if not server_token:
            raise ConfigurationError("POSTMARK_SERVER_TOKEN must be set unless SKIP_REAL_EMAIL_SENDING is enabled")
        self.from_address = from_address
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Postmark-Server-Token": server_token,
        })

    def _payload(self, message):
        payload = {
            "From": message.from_address or self.from_address,
            "To": message.to,
            "Subject": message.subject,
            "HtmlBody": message.html_body,
            "MessageStream": "outbound",
        }
        if message.text_body:
            payload["TextBody"] = message.text_body
        if message.tag:
            payload["Tag"] = message.tag
        if message.metadata:
            payload["Metadata"] = {k: str(v) for k, v in message.metadata.items()}
        return payload

    @staticmethod
    def _outcome(response_body):
        error_code = response_body.get("ErrorCode", 0)
        if error_code == 0:
            return SendOutcome(success=True, provider_message_id=response_body.get("MessageID"))
        return SendOutcome.failed(error_code, response_body.get("Message", "Unknown Postmark error"))

    def _post(self, endpoint, body):
        try:
            r = self.session.post(f"{self.api_url}{endpoint}", json=body, timeout=self.timeout)
        except (ConnectionError, Timeout) as e:
            raise TransientSendFailure(f"Postmark unreachable: {e}") from e
        except RequestException as e:
            raise TransientSendFailure(f"Postmark request failed: {e}") from e

        if r.status_code >= 500:
            raise TransientSendFailure(f"Postmark returned {r.status_code}: {r.text[:200]}")
        try:
            return r.status_code, r.json()
        except ValueError as e:
            raise TransientSendFailure(f"Postmark returned a non-JSON body ({r.status_code})") from e

    def send(self, message):
        status_code, body = self._post("/email", self._payload(message))
        outcome = self._outcome(body)
        if not outcome.success:
            logger.warning("Postmark rejected email", to=message.to, http_status=status_code,
                           error_code=outcome.error_code, error=outcome.error_message)
        return outcome

    def send_batch(self, messages):
        if not messages:
            return []
        if len(messages) == 1:
            return [self.send(messages[0])]

        status_code, body = self._post("/email/batch", [self._payload(m) for m in messages])
        if not isinstance(body, list):
            # Whole batch refused, e.g. invalid token or malformed request
            outcome = self._outcome(body)
            logger.error("Postmark rejected batch", http_status=status_code, count=len(messages),
                         error_code=outcome.error_code, error=outcome.error_message)
            return [SendOutcome.failed(outcome.error_code, outcome.error_message) for _ in messages]

        outcomes = [self._outcome(entry) for entry in body]
        if len(outcomes) < len(messages):
            outcomes.extend(
                SendOutcome.failed("MISSING_RESPONSE", "No response entry returned for message")
                for _ in range(len(messages) - len(outcomes))
            )
        logger.info("Postmark batch sent", count=len(messages),
                    succeeded=sum(1 for o in outcomes if o.success))
        return outcomes


def create_transport(settings_source):
    """
    Build the configured transport.

    Args:
        settings_source: Flask config mapping
    """
    if settings_source.get("SKIP_REAL_EMAIL_SENDING"):
        return LogOnlyTransport()
    return PostmarkTransport(
        server_token=settings_source.get("POSTMARK_SERVER_TOKEN"),
        from_address=settings_source.get("EMAIL_FROM"),
        api_url=settings_source.get("POSTMARK_API_URL") or "https://api.postmarkapp.com",
        timeout=float(settings_source.get("SEND_TIMEOUT_SECONDS") or 30),
    )
