"""LLM tool-calling loop on OpenAI chat completions.

Provides:
- Tool: a callable exposed to the model (name, description, JSON-schema parameters).
- ToolInvocation / GenerationResult: provider-agnostic record of what the loop did,
  so callers never parse raw provider messages.
- ToolCallingGenerator: runs prompt + history through the model, executing tool calls
  for up to max_steps rounds, then returns the final text.

Configuration (model, temperature, token cap, timeout) is passed in from
kb_agent.config.Settings.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from openai import OpenAI, OpenAIError

from kb_agent.errors import GenerationFailed

logger = logging.getLogger(__name__)


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]  # JSON schema of the arguments object
    handler: Callable[..., Any]  # called with the parsed arguments as keywords; result must be JSON-serializable

    def definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


@dataclass
class ToolInvocation:
    tool_name: str
    arguments: Dict[str, Any]
    result: Any


@dataclass
class GenerationResult:
    text: str
    tool_invocations: List[ToolInvocation] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)

    def last_invocation(self, tool_name: str) -> Optional[ToolInvocation]:
        for inv in reversed(self.tool_invocations):
            if inv.tool_name == tool_name:
                return inv
        return None


class ToolCallingGenerator:
    """Chat-completions loop that lets the model call tools before answering."""

    def __init__(
        self,
        client: OpenAI,
        model: str,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    def _complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Sequence[Tool],
        usage: Dict[str, int],
        tool_choice: Optional[str] = None,
    ):
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens
        if self.timeout:
            kwargs["timeout"] = self.timeout
        if tools:
            kwargs["tools"] = [t.definition() for t in tools]
            if tool_choice:
                kwargs["tool_choice"] = tool_choice
        try:
            resp = self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            raise GenerationFailed(f"chat completion failed: {e}") from e
        if resp.usage is not None:
            usage["prompt_tokens"] = usage.get("prompt_tokens", 0) + (resp.usage.prompt_tokens or 0)
            usage["completion_tokens"] = usage.get("completion_tokens", 0) + (resp.usage.completion_tokens or 0)
            usage["total_tokens"] = usage.get("total_tokens", 0) + (resp.usage.total_tokens or 0)
        if not resp.choices:
            raise GenerationFailed("chat completion returned no choices")
        return resp.choices[0].message

    @staticmethod
    def _call_tool(tool: Optional[Tool], name: str, raw_args: str) -> ToolInvocation:
        if tool is None:
            return ToolInvocation(tool_name=name, arguments={}, result={"error": f"unknown tool {name}"})
        try:
            args = json.loads(raw_args or "{}")
            if not isinstance(args, dict):
                raise ValueError("arguments must be a JSON object")
        except ValueError as e:
            logger.warning("Tool %s called with malformed arguments: %s", name, e)
            return ToolInvocation(tool_name=name, arguments={}, result={"error": f"invalid arguments: {e}"})
        try:
            result = tool.handler(**args)
        except TypeError as e:
            logger.warning("Tool %s rejected arguments %s: %s", name, args, e)
            return ToolInvocation(tool_name=name, arguments=args, result={"error": f"invalid arguments: {e}"})
        return ToolInvocation(tool_name=name, arguments=args, result=result)

    def generate(
        self,
        prompt: str,
        system: str,
        history: Sequence[Dict[str, str]] = (),
        tools: Sequence[Tool] = (),
        max_steps: int = 5,
    ) -> GenerationResult:
        """Answer prompt, letting the model call tools up to max_steps rounds.

        Args:
            prompt: The user message.
            system: System instructions.
            history: Prior {"role", "content"} messages, oldest first.
            tools: Tools the model may call.
            max_steps: Maximum tool-calling rounds; afterwards the model must answer
                without tools.

        Returns:
            GenerationResult: Final text plus every tool invocation in call order.

        Raises:
            GenerationFailed: If any completion call fails.
        """
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)
        messages.append({"role": "user", "content": prompt})

        by_name = {t.name: t for t in tools}
        invocations: List[ToolInvocation] = []
        usage: Dict[str, int] = {}

        for _ in range(max_steps):
            message = self._complete(messages, tools, usage)
            if not message.tool_calls:
                return GenerationResult(text=(message.content or "").strip(), tool_invocations=invocations, usage=usage)

            messages.append(
                {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                        }
                        for tc in message.tool_calls
                    ],
                }
            )
            for tc in message.tool_calls:
                inv = self._call_tool(by_name.get(tc.function.name), tc.function.name, tc.function.arguments)
                invocations.append(inv)
                messages.append({"role": "tool", "tool_call_id": tc.id, "content": json.dumps(inv.result)})

        # Out of tool rounds: force a text answer
        message = self._complete(messages, tools, usage, tool_choice="none")
        return GenerationResult(text=(message.content or "").strip(), tool_invocations=invocations, usage=usage)
