"""Shared fixtures: a scripted model and a temporary workspace."""

import pytest

from falalo.context import ContextSet
from falalo.llm import Completion, TokenUsage


def _role(messages) -> str:
    system = str(messages[0].content)
    if "error analysis" in system:
        return "recover"
    if "software architect" in system:
        return "plan"
    return "implement"


class ScriptedModel:
    """Fake ``complete`` that answers each prompt kind from a script.

    Replies are consumed in order; the last reply of a kind repeats.
    Exceptions in the script are raised instead of returned.
    """

    def __init__(self, plan="", implement=(), recover=()):
        self.replies = {
            "plan": [plan],
            "implement": list(implement),
            "recover": list(recover),
        }
        self.calls = {"plan": [], "implement": [], "recover": []}

    async def __call__(self, messages, model_type="reasoning"):
        role = _role(messages)
        self.calls[role].append(messages)
        queue = self.replies[role]
        if not queue:
            reply = ""
        elif len(queue) > 1:
            reply = queue.pop(0)
        else:
            reply = queue[0]
        if isinstance(reply, BaseException):
            raise reply
        return Completion(
            text=reply, usage=TokenUsage(prompt_tokens=10, completion_tokens=5)
        )


@pytest.fixture
def scripted_model():
    return ScriptedModel


@pytest.fixture
def context(tmp_path):
    """A context set over an empty temporary workspace."""
    return ContextSet(str(tmp_path), max_size=50, include_globs=["**/*"])
