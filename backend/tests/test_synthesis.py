from types import SimpleNamespace

import pytest

from conftest import FakeAnthropicClient
from sendconnect.errors import ConfigurationError, SynthesisError
from sendconnect.models import Passage
from sendconnect.synthesis import AnswerSynthesizer, build_user_prompt, format_context


def test_format_context_numbers_and_separates_excerpts() -> None:
    passages = [
        Passage(text="\nOne\n", score=0.9, page_label=3),
        Passage(text="Two", score=0.5, page_label=None),
    ]

    assert format_context(passages) == "[Excerpt 1 - Page 3]\nOne\n\n---\n\n[Excerpt 2 - Page Unknown]\nTwo"


def test_build_user_prompt_quotes_topic_title() -> None:
    prompt = build_user_prompt(topic_title="JCQ AA", query="Who approves?", context="[Excerpt 1 - Page 1]\nHead")

    assert prompt.startswith('Based on the following excerpts from "JCQ AA"')
    assert "**Question**: Who approves?" in prompt
    assert prompt.endswith("Please provide a clear, well-structured answer with specific page citations.")


def test_synthesize_uses_configured_model(test_settings) -> None:
    client = FakeAnthropicClient(answer="Answer (Page 1)")
    test_settings.anthropic_model = "claude-test"
    synthesizer = AnswerSynthesizer(settings=test_settings, client=client)

    answer = synthesizer.synthesize(topic_title="T", query="q", passages=[Passage(text="x", score=1.0, page_label=1)])

    assert answer == "Answer (Page 1)"
    assert client.calls[0]["model"] == "claude-test"


def test_non_text_first_block_yields_empty_answer(test_settings) -> None:
    client = FakeAnthropicClient()
    client.messages = SimpleNamespace(
        create=lambda **kwargs: SimpleNamespace(content=[SimpleNamespace(type="tool_use", name="lookup")])
    )
    synthesizer = AnswerSynthesizer(settings=test_settings, client=client)

    assert synthesizer.synthesize(topic_title="T", query="q", passages=[Passage(text="x", score=1.0)]) == ""


def test_synthesize_requires_passages(test_settings) -> None:
    synthesizer = AnswerSynthesizer(settings=test_settings, client=FakeAnthropicClient())

    with pytest.raises(SynthesisError):
        synthesizer.synthesize(topic_title="T", query="q", passages=[])


def test_missing_api_key_without_client_is_a_configuration_error(test_settings) -> None:
    test_settings.anthropic_api_key = ""
    synthesizer = AnswerSynthesizer(settings=test_settings)

    with pytest.raises(ConfigurationError):
        synthesizer.synthesize(topic_title="T", query="q", passages=[Passage(text="x", score=1.0)])
