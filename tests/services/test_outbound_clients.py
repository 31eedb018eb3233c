"""
Tests for the Postmark transport and the content generators, with the HTTP
session mocked out.
"""
import json
from unittest.mock import Mock

import pytest
import requests

from mailpipe.exceptions import ConfigurationError, TransientGenerationFailure, TransientSendFailure, ValidationFailed
from mailpipe.services.content_generation import (
    MockContentGenerator,
    OllamaContentGenerator,
    create_content_generator,
)
from mailpipe.services.email_transport import (
    LogOnlyTransport,
    OutboundMessage,
    PostmarkTransport,
    create_transport,
)


def response(status_code=200, body=None):
    r = Mock()
    r.status_code = status_code
    r.json.return_value = body
    r.text = json.dumps(body)
    return r


def message(to="reader@example.com"):
    return OutboundMessage(to=to, subject="Hi", html_body="<p>Hi</p>", text_body="Hi", tag="welcome",
                           metadata={"queue_item_id": "7"})


@pytest.fixture
def postmark():
    transport = PostmarkTransport("token", "news@example.com", api_url="https://postmark.test/")
    transport.session = Mock()
    return transport


# ==============================================================================
# POSTMARK
# ==============================================================================


class TestPostmarkTransport:

    def test_requires_token(self):
        with pytest.raises(ConfigurationError):
            PostmarkTransport(None, "news@example.com")

    def test_single_send(self, postmark):
        postmark.session.post.return_value = response(200, {"ErrorCode": 0, "MessageID": "abc"})

        outcome = postmark.send(message())

        assert outcome.success is True
        assert outcome.provider_message_id == "abc"
        url = postmark.session.post.call_args[0][0]
        payload = postmark.session.post.call_args.kwargs["json"]
        assert url == "https://postmark.test/email"
        assert payload["From"] == "news@example.com"
        assert payload["Tag"] == "welcome"
        assert payload["Metadata"] == {"queue_item_id": "7"}
        assert postmark.session.post.call_args.kwargs["timeout"] == 30

    def test_rejected_recipient(self, postmark):
        postmark.session.post.return_value = response(422, {"ErrorCode": 406, "Message": "Inactive recipient"})

        outcome = postmark.send(message())

        assert outcome.success is False
        assert outcome.error_code == "406"
        assert outcome.error_message == "Inactive recipient"

    def test_batch_outcomes_per_message(self, postmark):
        postmark.session.post.return_value = response(200, [
            {"ErrorCode": 0, "MessageID": "m1"},
            {"ErrorCode": 300, "Message": "Invalid email request"},
        ])

        outcomes = postmark.send_batch([message("a@example.com"), message("b@example.com")])

        assert postmark.session.post.call_args[0][0] == "https://postmark.test/email/batch"
        assert [o.success for o in outcomes] == [True, False]
        assert outcomes[1].error_code == "300"

    def test_batch_refused_as_a_whole(self, postmark):
        postmark.session.post.return_value = response(401, {"ErrorCode": 10, "Message": "Bad token"})

        outcomes = postmark.send_batch([message(), message()])

        assert len(outcomes) == 2
        assert all(o.error_message == "Bad token" for o in outcomes)

    def test_short_batch_response(self, postmark):
        postmark.session.post.return_value = response(200, [{"ErrorCode": 0, "MessageID": "m1"}])

        outcomes = postmark.send_batch([message(), message()])

        assert outcomes[1].error_code == "MISSING_RESPONSE"

    def test_server_error_is_transient(self, postmark):
        postmark.session.post.return_value = response(503, {"Message": "Unavailable"})
        with pytest.raises(TransientSendFailure):
            postmark.send(message())

    def test_connection_error_is_transient(self, postmark):
        postmark.session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransientSendFailure):
            postmark.send(message())

    def test_empty_batch(self, postmark):
        assert postmark.send_batch([]) == []
        postmark.session.post.assert_not_called()


class TestCreateTransport:

    def test_skip_real_sending(self):
        assert isinstance(create_transport({"SKIP_REAL_EMAIL_SENDING": True}), LogOnlyTransport)

    def test_postmark(self):
        transport = create_transport({"POSTMARK_SERVER_TOKEN": "t", "EMAIL_FROM": "a@example.com",
                                      "SEND_TIMEOUT_SECONDS": "12"})
        assert isinstance(transport, PostmarkTransport)
        assert transport.timeout == 12.0

    def test_log_only_records_messages(self):
        transport = LogOnlyTransport()
        outcome = transport.send(message())
        assert outcome.success is True
        assert transport.sent[0].to == "reader@example.com"


# ==============================================================================
# CONTENT GENERATION
# ==============================================================================


class TestOllamaContentGenerator:

    @pytest.fixture
    def ollama(self):
        generator = OllamaContentGenerator(base_url="http://ollama.test/", model="mistral", timeout=5)
        generator.session = Mock()
        return generator

    def test_generate(self, ollama):
        content = {"subject": "Read, {{ customerName }}", "html": "<p>{{ customerName }}</p>", "text": "t"}
        ollama.session.post.return_value = response(200, {"response": json.dumps(content)})

        result = ollama.generate("prompt", {})

        assert result.subject == "Read, {{ customerName }}"
        assert result.text == "t"
        call = ollama.session.post.call_args
        assert call[0][0] == "http://ollama.test/api/generate"
        assert call.kwargs["json"]["format"] == "json"
        assert call.kwargs["json"]["stream"] is False
        assert call.kwargs["timeout"] == 5

    def test_unreachable(self, ollama):
        ollama.session.post.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(TransientGenerationFailure):
            ollama.generate("prompt", {})

    def test_http_error(self, ollama):
        r = response(500, {})
        r.raise_for_status.side_effect = requests.exceptions.HTTPError("500")
        ollama.session.post.return_value = r
        with pytest.raises(TransientGenerationFailure):
            ollama.generate("prompt", {})

    def test_unparseable_response(self, ollama):
        ollama.session.post.return_value = response(200, {"response": "not json"})
        with pytest.raises(TransientGenerationFailure):
            ollama.generate("prompt", {})

    def test_missing_fields(self, ollama):
        ollama.session.post.return_value = response(200, {"response": json.dumps({"subject": "Hi"})})
        with pytest.raises(ValidationFailed):
            ollama.generate("prompt", {})


class TestCreateContentGenerator:

    def test_mock_is_default(self):
        assert isinstance(create_content_generator({}), MockContentGenerator)

    def test_ollama(self):
        generator = create_content_generator({"CONTENT_GENERATOR": "ollama", "OLLAMA_MODEL": "llama3"})
        assert isinstance(generator, OllamaContentGenerator)
        assert generator.model == "llama3"

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            create_content_generator({"CONTENT_GENERATOR": "gpt"})

    def test_mock_content_keeps_reader_data_out_of_the_source(self):
        content = MockContentGenerator().generate("prompt", {"topicsOfInterest": ["{{ c", "<b>"]})
        assert "{{ customerName }}" in content.subject
        assert "{{ readingTopics }}" in content.html
        assert "<b>" not in content.html
