"""External collaborators invoked by workflow nodes.

The engine never calls these itself. Nodes receive them however the workflow
author likes (closures, node fields) and call them like any other function
that may fail: an exception raised here surfaces as ``NodeExecutionError``.

Contracts:
    Generate: ``generate(prompt) -> str | BaseModel``
    Search: ``search(query) -> list of str``
    CreateTicket: ``create_ticket() -> ticket id``

``MirascopeGenerator`` adapts a mirascope call to the ``Generate`` contract.
"""

import inspect
from typing import Any, Awaitable, Callable, List, Protocol, Union, runtime_checkable
from pydantic import BaseModel
from mirascope.core import BaseMessageParam

from stepgraph.core.logging import get_logger, LogComponent

logger = get_logger(LogComponent.COLLABORATORS)

GenerateResult = Union[str, BaseModel]


@runtime_checkable
class Generate(Protocol):
    async def __call__(self, prompt: str) -> GenerateResult: ...


@runtime_checkable
class Search(Protocol):
    async def __call__(self, query: str) -> List[str]: ...


@runtime_checkable
class CreateTicket(Protocol):
    async def __call__(self) -> str: ...


class MirascopeGenerator:
    """Wraps a mirascope call so nodes can ``await generate(prompt)``.

    ``call`` is a function decorated with ``mirascope.llm.call`` (sync or async)
    that takes the prompt string. Calls with a ``response_model`` return the
    structured object unchanged; plain calls return the response text.

    Every exchange is recorded in ``history`` as mirascope message params.

    Example:
        ```python
        from mirascope import llm

        @llm.call(provider="openai", model="gpt-4o-mini", response_model=EmailClassification)
        def classify(prompt: str) -> str:
            return prompt

        generate = MirascopeGenerator(classify)
        classification = await generate("Classify this email: ...")
        ```
    """

    def __init__(self, call: Callable[[str], Union[Any, Awaitable[Any]]]):
        self.call = call
        self.history: List[BaseMessageParam] = []

    async def __call__(self, prompt: str) -> GenerateResult:
        self.history.append(BaseMessageParam(role="user", content=prompt))
        response = self.call(prompt)
        if inspect.isawaitable(response):
            response = await response

        if isinstance(response, BaseModel) and not hasattr(response, "content"):
            result: GenerateResult = response
            content = response.model_dump_json()
        else:
            result = content = str(getattr(response, "content", response))

        self.history.append(BaseMessageParam(role="assistant", content=content))
        logger.debug(f"Generated {type(result).__name__} for prompt of {len(prompt)} chars")
        return result

    def serialize_history(self) -> List[dict]:
        """History as JSON-compatible dicts."""
        return [{"role": msg.role, "content": msg.content} for msg in self.history]
