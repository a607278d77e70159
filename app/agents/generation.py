"""Streaming generation with a text sink and a one-shot completion future.

The generator model's text is forwarded chunk by chunk to an
:class:`OutputChannel` while it arrives; the structured
:class:`~app.core.state.Generation` is only available once the stream has
fully completed, through :meth:`GenerationStream.result`::

    channel = OutputChannel()
    stream = GenerationStream(get_llm("generator"), prompt, channel, timeout=300)
    stream.start()
    async for chunk in channel:        # reader side
        ...
    generation = await stream.result() # raises GenerationError
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from app.core.logging import get_logger
from app.core.nodes._helpers import _message_text, _parse_json_object
from app.core.state import Generation

logger = get_logger("agents.generation")

_GENERATOR_SYSTEM = (
    "You modify source repositories. You always answer with a single JSON object "
    "describing file operations, shell commands and an explanation."
)


class GenerationError(Exception):
    """The model produced no usable Generation (error, bad JSON, timeout)."""


# ---------------------------------------------------------------------------
# Output channel
# ---------------------------------------------------------------------------


class OutputChannel:
    """Append-only text sink read by exactly one consumer.

    Writes after :meth:`close` are dropped.  Iterating yields every chunk in
    order and stops once the channel is closed.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, text: str) -> None:
        if text and not self._closed:
            self._queue.put_nowait(text)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def parse_generation(text: str) -> Generation:
    """Parse the accumulated model output into a :class:`Generation`."""
    payload = _parse_json_object(text)
    if payload is None:
        raise GenerationError("Model output is not a JSON object")
    try:
        return Generation.model_validate(payload)
    except ValidationError as exc:
        raise GenerationError(f"Model output does not match the Generation schema: {exc}") from exc


async def stream_generation(llm: Any, prompt: str, channel: OutputChannel) -> Generation:
    """Stream one generation round into *channel* and return the parsed result.

    Falls back to a single ``ainvoke`` if the model does not support streaming.
    """
    messages = [SystemMessage(content=_GENERATOR_SYSTEM), HumanMessage(content=prompt)]
    accumulated = ""
    try:
        async for chunk in llm.astream(messages):
            text = _message_text(chunk)
            if text:
                accumulated += text
                channel.write(text)
    except NotImplementedError:
        logger.debug("generation: model does not support streaming, invoking")
        accumulated = _message_text(await llm.ainvoke(messages))
        channel.write(accumulated)

    generation = parse_generation(accumulated)
    logger.info(
        "generation: %d operation(s), %d command(s)",
        len(generation.file_operations),
        len(generation.shell_commands),
    )
    return generation


class GenerationStream:
    """Runs :func:`stream_generation` in the background.

    The completion future is resolved exactly once, with the Generation or
    the error.  :meth:`result` waits for it for at most *timeout* seconds.
    """

    def __init__(self, llm: Any, prompt: str, channel: OutputChannel, timeout: float = 300) -> None:
        self._llm = llm
        self._prompt = prompt
        self._channel = channel
        self._timeout = timeout
        self._task: asyncio.Task | None = None
        self._future: asyncio.Future[Generation] | None = None

    def start(self) -> asyncio.Future[Generation]:
        if self._future is not None:
            return self._future
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._task = asyncio.create_task(stream_generation(self._llm, self._prompt, self._channel))
        self._task.add_done_callback(self._on_complete)
        return self._future

    def _on_complete(self, task: asyncio.Task) -> None:
        if self._future is None or self._future.done():
            return
        if task.cancelled():
            self._future.set_exception(GenerationError("Generation was cancelled"))
        elif task.exception() is not None:
            exc = task.exception()
            if not isinstance(exc, GenerationError):
                exc = GenerationError(f"Generation failed: {exc}")
            self._future.set_exception(exc)
        else:
            self._future.set_result(task.result())

    async def result(self) -> Generation:
        """Return the Generation once the stream has completed.

        Raises:
            GenerationError: on model failure, unparseable output or timeout.
        """
        future = self.start()
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._timeout)
        except TimeoutError as exc:
            if self._task is not None:
                self._task.cancel()
            raise GenerationError(f"Generation did not complete within {self._timeout}s") from exc
