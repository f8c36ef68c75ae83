import json
from typing import Any, Dict, List, Optional

import pytest

from forge_agent.domain.models.run_context import create_run_context
from forge_agent.infrastructure.config.settings import PipelineSettings
from forge_agent.infrastructure.llm.completion_client import CompletionClient
from forge_agent.infrastructure.persistence.storage import InMemoryStorage


def make_completion(
    content: Optional[str] = "Grace is unearned favor.",
    tool_calls: Optional[List[Dict[str, Any]]] = None,
    finish_reason: str = "stop",
    refusal: Optional[str] = None,
    prompt_tokens: int = 120,
    completion_tokens: int = 30,
    model: str = "gpt-5.1-chat-latest",
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    if refusal is not None:
        message["refusal"] = refusal
    return {
        "model": model,
        "choices": [{"message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def make_tool_call(call_id: str, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


class FakeCompletionClient(CompletionClient):
    """Scripted client.

    JSON-mode requests (planner, extractor, note summary) pop from
    `json_responses`; chat requests pop from `chat_responses`. An exhausted
    queue answers with an empty JSON object or a default completion.
    """

    def __init__(
        self,
        chat_responses: Optional[List[Any]] = None,
        json_responses: Optional[List[Any]] = None,
    ):
        self.chat_responses = list(chat_responses or [])
        self.json_responses = list(json_responses or [])
        self.requests: List[Dict[str, Any]] = []
        self.timeouts: List[Optional[float]] = []
        self.closed = False

    @property
    def chat_requests(self) -> List[Dict[str, Any]]:
        return [r for r in self.requests if "response_format" not in r]

    async def complete(self, request: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        self.requests.append(request)
        self.timeouts.append(timeout)
        is_json = "response_format" in request
        queue = self.json_responses if is_json else self.chat_responses

        if queue:
            response = queue.pop(0)
        elif is_json:
            response = make_completion(content="{}")
        else:
            response = make_completion()

        if isinstance(response, Exception):
            raise response
        if is_json and isinstance(response, dict) and "choices" not in response:
            return make_completion(content=json.dumps(response))
        return response

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def settings():
    return PipelineSettings(environment="development")


@pytest.fixture
def fake_client():
    return FakeCompletionClient()


@pytest.fixture
def make_ctx():
    def _make(message: str = "What does grace mean?", **overrides):
        params = {
            "trace_id": "trace-1",
            "user_id": "user-1",
            "entrypoint": "followup",
            "message": message,
            "app_version": "1.0.0",
            "platform": "ios",
        }
        params.update(overrides)
        return create_run_context(**params)
    return _make
