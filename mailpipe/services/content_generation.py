"""
Content generators for AI pipelines.

MockContentGenerator produces deterministic copy for development and tests.
OllamaContentGenerator asks a local Ollama model for a JSON email.
"""
import json
from dataclasses import dataclass
from typing import Optional

import requests
from requests.exceptions import ConnectionError, RequestException, Timeout

from mailpipe.exceptions import ConfigurationError, TransientGenerationFailure, ValidationFailed
from mailpipe.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class GeneratedContent:
    subject: str
    html: str
    text: Optional[str] = None


class ContentGenerator:
    """Generation capability: prompt in, email content out."""

    name = "base"

    def generate(self, prompt: str, recipient_context: dict) -> GeneratedContent:
        raise NotImplementedError


class MockContentGenerator(ContentGenerator):
    """Fixed copy; reader data only ever enters through template variables."""

    name = "mock"

    def generate(self, prompt, recipient_context):
        return GeneratedContent(
            subject="Keep reading, {{ customerName }}!",
            html=(
                '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
                "<h2>Hello {{ customerName }}!</h2>"
                "<p>We noticed you've been exploring <strong>{{ readingTopics }}</strong>. That's fantastic!</p>"
                "<p><strong>Today's reading challenge:</strong> open a book for just 10 minutes.</p>"
                "<p>Keep up the amazing work!<br>The Reading Team</p>"
                "</div>"
            ),
            text=(
                "Hello {{ customerName }}!\n\n"
                "We noticed you've been exploring {{ readingTopics }}. That's fantastic!\n\n"
                "Today's reading challenge: open a book for just 10 minutes.\n\n"
                "Keep up the amazing work!\nThe Reading Team"
            ),
        )


class OllamaContentGenerator(ContentGenerator):
    """Calls Ollama's /api/generate with JSON output."""

    name = "ollama"

    RESPONSE_FORMAT = """
Return only JSON:
{
  "subject": "subject line, may use {{ customerName }}",
  "html": "HTML body, may use {{ customerName }}",
  "text": "plain text body"
}
"""

    def __init__(self, base_url="http://localhost:11434", model="mistral", timeout=30):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = requests.Session()

    def generate(self, prompt, recipient_context):
        try:
            res = self.session.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt + "\n" + self.RESPONSE_FORMAT,
                    "stream": False,
                    "format": "json",
                },
                timeout=self.timeout,
            )
            res.raise_for_status()
        except (ConnectionError, Timeout) as e:
            raise TransientGenerationFailure(f"Ollama unreachable: {e}") from e
        except RequestException as e:
            raise TransientGenerationFailure(f"Ollama request failed: {e}") from e

        try:
            content = json.loads(res.json()["response"])
        except (ValueError, KeyError, TypeError) as e:
            raise TransientGenerationFailure(f"Ollama returned unparseable content: {e}") from e

        if not isinstance(content, dict) or not content.get("subject") or not content.get("html"):
            raise ValidationFailed("Generated content is missing a subject or HTML body")

        logger.info("Content generated", model=self.model, subject_length=len(content["subject"]))
        return GeneratedContent(subject=content["subject"], html=content["html"], text=content.get("text"))


def create_content_generator(settings_source):
    """Build the generator named by CONTENT_GENERATOR."""
    kind = (settings_source.get("CONTENT_GENERATOR") or "mock").lower()
    if kind == "mock":
        return MockContentGenerator()
    if kind == "ollama":
        return OllamaContentGenerator(
            base_url=settings_source.get("OLLAMA_URL") or "http://localhost:11434",
            model=settings_source.get("OLLAMA_MODEL") or "mistral",
            timeout=float(settings_source.get("GENERATION_TIMEOUT_SECONDS") or 30),
        )
    raise ConfigurationError(f"Unknown CONTENT_GENERATOR '{kind}' (expected 'mock' or 'ollama')")
