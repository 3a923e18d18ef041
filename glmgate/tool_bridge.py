"""Execution of detected tool calls through an injected executor."""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .outcome_logger import NullRecorder, OutcomeEvent, OutcomeRecorder
from .tool_detection import ToolCall

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[str, str], Union[Any, Awaitable[Any]]]


class ToolNotFoundError(LookupError):
    pass


@dataclass
class RegisteredTool:
    name: str
    func: Callable[..., Any]
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)


class ToolRegistry:
    """Name -> callable table; ``execute`` matches the ``ToolExecutor`` signature.

    Registered callables receive the decoded arguments as keyword arguments
    and may be sync or async.
    """

    def __init__(self):
        self._tools: Dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        func: Callable[..., Any],
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._tools[name] = RegisteredTool(name, func, description, parameters or {})

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def execute(self, name: str, args_json: str) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool not found: {name}")
        args = json.loads(args_json) if args_json else {}
        if not isinstance(args, dict):
            args = {"input": args}
        result = tool.func(**args)
        if inspect.isawaitable(result):
            result = await result
        return result


def format_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, indent=2, default=str)


class ToolExecutionBridge:
    """Run one detected call and turn the outcome into result text.

    Executor failures do not propagate; they become a
    ``"Tool execution failed: ..."`` result so the response can continue.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        recorder: Optional[OutcomeRecorder] = None,
        timeout: Optional[float] = 30.0,
    ):
        self.executor = executor
        self.recorder = recorder or NullRecorder()
        self.timeout = timeout

    async def _invoke(self, call: ToolCall) -> Any:
        result = self.executor(call.name, call.arguments)
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=self.timeout)
        return result

    async def run(self, call: ToolCall) -> str:
        start = time.monotonic()
        try:
            result = await self._invoke(call)
        except Exception as e:
            latency_ms = (time.monotonic() - start) * 1000
            message = str(e) or type(e).__name__
            logger.warning("[tools] %s failed after %.0fms: %s", call.name, latency_ms, message)
            self.recorder.record_outcome(
                OutcomeEvent(
                    kind="tool_call",
                    success=False,
                    detail=message,
                    latency_ms=latency_ms,
                    extra={"tool": call.name, "call_id": call.id},
                )
            )
            return f"Tool execution failed: {message}"

        latency_ms = (time.monotonic() - start) * 1000
        logger.info("[tools] %s completed in %.0fms", call.name, latency_ms)
        self.recorder.record_outcome(
            OutcomeEvent(
                kind="tool_call",
                success=True,
                latency_ms=latency_ms,
                extra={"tool": call.name, "call_id": call.id},
            )
        )
        return format_tool_result(result)
