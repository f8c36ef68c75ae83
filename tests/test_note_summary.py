import pytest

from forge_agent.domain.errors import ModelProviderError
from forge_agent.domain.planning.note_summary import FALLBACK_SUMMARY, fallback_summary, summarize_note

from tests.conftest import FakeCompletionClient, make_completion


class TestNoteSummary:

    @pytest.mark.asyncio
    async def test_summary_and_tags_are_sanitized(self):
        client = FakeCompletionClient(json_responses=[{
            "summary": "Trusting God while waiting; contact me@example.com",
            "tags": ["trust", "waiting", "", "patience", "hope", "rest", "extra"],
        }])

        result = await summarize_note("I am waiting on a job. Email me@example.com", client, model="nano")

        assert result.summary == "Trusting God while waiting; contact [EMAIL]"
        assert result.tags == ["trust", "waiting", "patience", "hope"]
        request = client.requests[0]
        assert request["model"] == "nano"
        assert "[EMAIL]" in request["messages"][1]["content"]
        assert "me@example.com" not in request["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_empty_note(self):
        client = FakeCompletionClient()

        result = await summarize_note("   ", client)

        assert result.summary == FALLBACK_SUMMARY
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_fallbacks(self):
        failing = FakeCompletionClient(json_responses=[ModelProviderError("timeout", status_code=504)])
        empty = FakeCompletionClient(json_responses=[make_completion(content="")])
        missing = FakeCompletionClient(json_responses=[{"tags": ["x"]}])

        for client in (failing, empty, missing, None):
            result = await summarize_note("Call 555-123-4567 about prayer", client)
            assert result.summary == "Call [PHONE] about prayer"
            assert result.tags is None

    def test_fallback_preview_is_truncated(self):
        result = fallback_summary("a" * 200)
        assert result.summary == "a" * 150 + "..."
