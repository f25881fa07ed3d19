"""Prompt templates for the orchestration conversations.

Each prompt is a YAML document under ``falalo/prompts/<topic>/<name>.yml``::

    Name: Planner
    Description: ...
    Model: reasoning            # or "instruction"
    Acknowledge: I will help... # optional assistant turn
    System: |
      ...
    User: |
      ... {request} ... {context}

``User`` is a ``str.format`` template. When a prompt has an ``Acknowledge``
line and the caller passes the raw request, the conversation replays it as
request -> acknowledgement -> detailed prompt.
"""

import string
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

ModelType = Literal["instruction", "reasoning"]

_REQUIRED_FIELDS = {"Name", "Description", "Model", "System", "User"}
_MODEL_TYPES = ("instruction", "reasoning")


def _template_fields(template: str) -> frozenset[str]:
    """Names referenced by a ``str.format`` template.

    Raises:
        ValueError: On unbalanced braces or positional fields.
    """
    names = set()
    for _, name, _, _ in string.Formatter().parse(template):
        if name is None:
            continue
        if not name or name.isdigit():
            raise ValueError("Prompt templates must use named fields only")
        names.add(name)
    return frozenset(names)


@dataclass(frozen=True)
class LLMPrompt:
    name: str
    description: str
    model: ModelType
    system: str
    user: str
    acknowledge: str = ""

    @property
    def fields(self) -> frozenset[str]:
        return _template_fields(self.user)

    def render(self, **values: object) -> str:
        """Fill the user template with *values*.

        Raises:
            KeyError: If the template references a value that was not given.
        """
        return self.user.format(**values)

    def conversation(
        self, request: str | None = None, **values: object
    ) -> list[BaseMessage]:
        """Build the message list sent to the model."""
        messages: list[BaseMessage] = [SystemMessage(content=self.system)]
        if request is not None and self.acknowledge:
            messages.append(HumanMessage(content=request))
            messages.append(AIMessage(content=self.acknowledge))
            values.setdefault("request", request)
        elif request is not None:
            values.setdefault("request", request)
        messages.append(HumanMessage(content=self.render(**values)))
        return messages


@lru_cache(maxsize=None)
def load_prompt(topic: str, function: str) -> LLMPrompt:
    """Load and validate ``prompts/<topic>/<function>.yml``.

    Raises:
        FileNotFoundError: If the prompt file doesn't exist
        ValueError: If the document is not a mapping, misses required fields,
            names an unknown model type or has a malformed template
        yaml.YAMLError: If the YAML is malformed
    """
    prompt_path = Path(__file__).parent / "prompts" / topic / f"{function}.yml"
    if not prompt_path.exists():
        raise FileNotFoundError(
            f"Prompt not found: {topic}/{function}.yml at {prompt_path}"
        )

    data = yaml.safe_load(prompt_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Invalid prompt file structure in {prompt_path}")

    missing_fields = _REQUIRED_FIELDS - set(data)
    if missing_fields:
        raise ValueError(
            f"Prompt file missing required fields: {sorted(missing_fields)}"
        )

    model = str(data["Model"]).lower()
    if model not in _MODEL_TYPES:
        raise ValueError(
            f"Invalid model type '{model}'. Must be 'instruction' or 'reasoning'"
        )

    user = str(data["User"])
    try:
        _template_fields(user)
    except ValueError as e:
        raise ValueError(f"Invalid user template in {prompt_path}: {e}") from e

    return LLMPrompt(
        name=str(data["Name"]),
        description=str(data["Description"]),
        model=model,  # type: ignore[arg-type]
        system=str(data["System"]),
        user=user,
        acknowledge=str(data.get("Acknowledge") or ""),
    )
