"""Execution agent collaborator and the progress fold over its event stream."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from taskrelay.errors import AgentFailure, JobTimeout

log = logging.getLogger(__name__)

EVENT_TEXT = "text"
EVENT_TOOL_CALL = "tool_call"
EVENT_SESSION_ID = "session_id"
EVENT_RESULT = "result"

FAILURE_MARKER = "❌"


@dataclass(frozen=True)
class AgentEvent:
    kind: str
    text: str = ""
    tool: str | None = None
    session_id: str | None = None
    is_error: bool = False


@runtime_checkable
class ExecutionAgent(Protocol):
    """Structural interface for execution agents.

    ``run`` returns an async iterator; dropping it (``aclose``) abandons the
    underlying call.
    """

    def run(
        self,
        prompt: str,
        *,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[AgentEvent]: ...


def parse_stream_message(msg: dict[str, Any]) -> list[AgentEvent]:
    """Map one ``stream-json`` message to zero or more :class:`AgentEvent`."""
    kind = msg.get("type")
    events: list[AgentEvent] = []
    if kind == "system":
        if msg.get("subtype") == "init" and msg.get("session_id"):
            events.append(AgentEvent(EVENT_SESSION_ID, session_id=msg["session_id"]))
    elif kind == "assistant":
        content = (msg.get("message") or {}).get("content") or []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                events.append(AgentEvent(EVENT_TEXT, text=block.get("text") or ""))
            elif block.get("type") == "tool_use":
                events.append(AgentEvent(EVENT_TOOL_CALL, tool=block.get("name") or "tool"))
    elif kind == "result":
        is_error = bool(msg.get("is_error")) or msg.get("subtype") not in (None, "success")
        events.append(
            AgentEvent(
                EVENT_RESULT,
                text=msg.get("result") or "",
                session_id=msg.get("session_id"),
                is_error=is_error,
            )
        )
    else:
        log.debug("Agent message type: %s", kind)
    return events


class ClaudeCodeAgent:
    """Runs the Claude Code CLI in print mode and streams its JSON output.

    One subprocess per :meth:`run`; ``--resume`` continues a stored session.
    """

    def __init__(
        self,
        *,
        command: str = "claude",
        model: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = command
        self.model = model
        self.cwd = cwd
        self.env = env

    def build_argv(
        self,
        prompt: str,
        *,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
    ) -> list[str]:
        argv = [
            self.command,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if self.model:
            argv += ["--model", self.model]
        if system_prompt:
            argv += ["--append-system-prompt", system_prompt]
        if resume_session_id:
            argv += ["--resume", resume_session_id]
        return argv

    async def run(
        self,
        prompt: str,
        *,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[AgentEvent]:
        argv = self.build_argv(
            prompt, resume_session_id=resume_session_id, system_prompt=system_prompt
        )
        env = {**os.environ, **self.env} if self.env else None
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=10 * 1024 * 1024,  # single stream-json lines can be large
            )
        except OSError as exc:
            raise AgentFailure(f"Could not start agent '{self.command}': {exc}") from exc

        stderr_tail: list[str] = []
        stderr_task = asyncio.create_task(self._drain_stderr(process, stderr_tail))
        saw_result = False
        try:
            assert process.stdout
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                msg = self._decode_json_line(line)
                if msg is None:
                    continue
                for event in parse_stream_message(msg):
                    if event.kind == EVENT_RESULT:
                        saw_result = True
                    yield event
            returncode = await process.wait()
            if returncode != 0 and not saw_result:
                detail = "\n".join(stderr_tail[-20:]) or f"exit code {returncode}"
                raise AgentFailure(f"Agent exited with code {returncode}: {detail}")
        finally:
            if process.returncode is None:
                process.kill()
                with contextlib.suppress(ProcessLookupError):
                    await process.wait()
            stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stderr_task

    @staticmethod
    def _decode_json_line(line: bytes) -> dict[str, Any] | None:
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    @staticmethod
    async def _drain_stderr(process: asyncio.subprocess.Process, tail: list[str]) -> None:
        """Read stderr so the pipe never fills; keep the last lines for errors."""
        assert process.stderr
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            log.debug("agent stderr: %s", text)
            tail.append(text)
            del tail[:-50]


# -- fold --

ProgressCallback = Callable[[str, int], None]
SessionCallback = Callable[[str], None]


@dataclass
class AgentOutcome:
    text: str
    result: str
    session_id: str | None
    tool_calls: int

    @property
    def summary(self) -> str:
        return (self.result or self.text).strip()


def tool_progress(tool_calls: int) -> int:
    return min(90, 20 + 15 * tool_calls)


def looks_failed(text: str) -> bool:
    return FAILURE_MARKER in text and "failed" in text


async def _fold(
    stream: AsyncIterator[AgentEvent],
    on_progress: ProgressCallback | None,
    on_session: SessionCallback | None,
    resume_session_id: str | None,
) -> AgentOutcome:
    text_parts: list[str] = []
    tool_calls = 0
    session_id: str | None = None
    result: AgentEvent | None = None

    def _session(sid: str | None) -> None:
        nonlocal session_id
        if not sid or sid == session_id:
            return
        session_id = sid
        log.info("Agent session captured: %s", sid)
        if on_session:
            on_session(sid)

    async with contextlib.aclosing(stream):  # type: ignore[type-var]
        async for event in stream:
            if event.kind == EVENT_TEXT:
                text_parts.append(event.text)
            elif event.kind == EVENT_TOOL_CALL:
                tool_calls += 1
                log.info("Tool used: %s", event.tool)
                if on_progress:
                    on_progress(f"Using tool: {event.tool}", tool_progress(tool_calls))
            elif event.kind == EVENT_SESSION_ID:
                _session(event.session_id)
            elif event.kind == EVENT_RESULT:
                _session(event.session_id)
                result = event

    text = "".join(text_parts)
    final_session = session_id or resume_session_id
    if result is None:
        raise AgentFailure("Agent stream ended without a result", session_id=final_session)
    if result.is_error:
        raise AgentFailure(result.text or "Agent reported an error", session_id=final_session)
    if looks_failed(text):
        raise AgentFailure(text, session_id=final_session)
    return AgentOutcome(
        text=text, result=result.text, session_id=final_session, tool_calls=tool_calls
    )


async def run_agent(
    agent: ExecutionAgent,
    prompt: str,
    *,
    resume_session_id: str | None = None,
    system_prompt: str | None = None,
    on_progress: ProgressCallback | None = None,
    on_session: SessionCallback | None = None,
    timeout: float | None = None,
    start_step: str = "Starting task execution",
) -> AgentOutcome:
    """Drive one agent run to completion and fold its events into progress.

    Reports 10% at start, ``min(90, 20 + 15 * n)`` after the n-th tool call,
    and 100% on success. *on_session* fires as soon as a new session id is
    seen. Raises :class:`AgentFailure` for agent errors and
    :class:`JobTimeout` when *timeout* elapses (the stream is dropped).
    """
    if on_progress:
        on_progress(start_step, 10)
    stream = agent.run(prompt, resume_session_id=resume_session_id, system_prompt=system_prompt)
    try:
        outcome = await asyncio.wait_for(
            _fold(stream, on_progress, on_session, resume_session_id), timeout=timeout
        )
    except TimeoutError:
        raise JobTimeout(timeout or 0) from None
    if on_progress:
        on_progress("Completed", 100)
    return outcome
