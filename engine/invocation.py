"""
OpenClaw - Agent Invocation

The Run Engine calls agents through the AgentInvoker interface. One
invocation per step attempt; the invoker reports output, token usage and
cost, or raises ToolFailure / AgentFailure.

Implementations:
  - CallableInvoker:  per-agent Python callables (tests, local tools)
  - ChatModelInvoker: langchain-core chat models with a pricing table

Pricing lives in the orchestrator config:

    pricing:
      gpt-4o-mini:
        input_per_million: 0.15
        output_per_million: 0.60
"""

from __future__ import annotations

import abc
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from engine.exceptions import AgentFailure, InfrastructureError, InvocationFailure

logger = logging.getLogger("openclaw.invocation")


@dataclass
class InvocationRequest:
    """One attempt at one workflow step."""
    run_id: str
    step_index: int
    step_name: str
    agent: Any                      # assembly.models.ResolvedAgent
    input: Any
    tools: list[str] = field(default_factory=list)
    tool_definitions: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    project_context: dict[str, Any] = field(default_factory=dict)


@dataclass
class InvocationResult:
    output: Any
    tokens: int = 0
    cost_usd: float = 0.0


class AgentInvoker(abc.ABC):
    """Executes a single agent step. Must be safe to call from worker threads."""

    @abc.abstractmethod
    def invoke(self, request: InvocationRequest) -> InvocationResult: ...


# ═══════════════════════════════════════════════════════════════════
# Callable
# ═══════════════════════════════════════════════════════════════════

class CallableInvoker(AgentInvoker):
    """
    Dispatches to a Python callable registered per agent name.

    A handler receives the InvocationRequest and returns either an
    InvocationResult or a bare output (no tokens, no cost). Handlers may
    raise ToolFailure / AgentFailure directly; any other exception is
    reported as an AgentFailure.
    """

    def __init__(
        self,
        handlers: Mapping[str, Callable[[InvocationRequest], Any]] | None = None,
        default: Callable[[InvocationRequest], Any] | None = None,
    ):
        self._handlers = dict(handlers or {})
        self._default = default

    def register(self, agent_name: str, handler: Callable[[InvocationRequest], Any]) -> None:
        self._handlers[agent_name] = handler

    def invoke(self, request: InvocationRequest) -> InvocationResult:
        name = request.agent.name
        handler = self._handlers.get(name, self._default)
        if handler is None:
            raise AgentFailure(name, f"No handler registered for agent {name!r}")
        try:
            result = handler(request)
        except (InvocationFailure, InfrastructureError):
            raise
        except Exception as e:
            raise AgentFailure(name, f"{type(e).__name__}: {e}") from e
        if isinstance(result, InvocationResult):
            return result
        return InvocationResult(output=result)


# ═══════════════════════════════════════════════════════════════════
# Chat Model
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ModelPricing:
    """Pricing per million tokens for a model."""
    model: str
    input_per_million: float
    output_per_million: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        input_cost = (input_tokens / 1_000_000) * self.input_per_million
        output_cost = (output_tokens / 1_000_000) * self.output_per_million
        return input_cost + output_cost


# Conservative estimate for models missing from the pricing table
UNKNOWN_MODEL_INPUT_PER_MILLION = 1.00
UNKNOWN_MODEL_OUTPUT_PER_MILLION = 3.00


def load_pricing(config: Any) -> dict[str, ModelPricing]:
    """Read the `pricing` section of a ConfigLoader (or plain dict)."""
    section = config.get("pricing", {}) or {}
    return {
        model: ModelPricing(
            model=model,
            input_per_million=float(prices.get("input_per_million", 0.0)),
            output_per_million=float(prices.get("output_per_million", 0.0)),
        )
        for model, prices in section.items()
    }


class ChatModelInvoker(AgentInvoker):
    """
    Runs each step as one chat completion.

    The agent's prompt becomes the system message (with the tools the
    agent may use this step listed after it); the step input becomes the
    human message. Agents with params.output_format == "json" have their
    reply parsed, and an unparseable reply is an AgentFailure.

    Args:
        models: model name -> chat model. "default" is used for agents
            whose model has no entry.
        pricing: model name -> ModelPricing.
        unknown_model_action: "warn" (conservative estimate) or "fail".
    """

    def __init__(
        self,
        models: Mapping[str, BaseChatModel] | BaseChatModel,
        pricing: Mapping[str, ModelPricing] | None = None,
        unknown_model_action: str = "warn",
    ):
        if isinstance(models, BaseChatModel):
            models = {"default": models}
        self._models = dict(models)
        self._pricing = dict(pricing or {})
        self.unknown_model_action = unknown_model_action
        self._unknown_models_seen: set[str] = set()
        self._lock = threading.Lock()

    def _model_for(self, agent: Any) -> BaseChatModel:
        model = self._models.get(agent.model) or self._models.get("default")
        if model is None:
            raise AgentFailure(agent.name, f"No chat model configured for {agent.model!r}")
        return model

    def _messages(self, request: InvocationRequest) -> list:
        system = request.agent.prompt or f"You are the {request.agent.name} agent."
        if request.tools:
            lines = []
            for name in request.tools:
                tool = request.tool_definitions.get(name)
                description = getattr(tool, "description", "") if tool else ""
                lines.append(f"- {name}: {description}" if description else f"- {name}")
            system += "\n\nAvailable tools:\n" + "\n".join(lines)

        body = request.input
        if not isinstance(body, str):
            body = json.dumps(body, default=str, indent=2)
        return [SystemMessage(content=system), HumanMessage(content=body)]

    def _price(self, agent: Any, input_tokens: int, output_tokens: int) -> float:
        model = agent.model
        pricing = self._pricing.get(model)
        if pricing:
            return pricing.cost(input_tokens, output_tokens)
        if self.unknown_model_action == "fail":
            raise AgentFailure(agent.name, f"No pricing configured for model '{model}'")
        with self._lock:
            first = model not in self._unknown_models_seen
            self._unknown_models_seen.add(model)
        if first:
            logger.warning(
                "No pricing for model '%s', using conservative estimate "
                "($%.2f/M input, $%.2f/M output)",
                model, UNKNOWN_MODEL_INPUT_PER_MILLION, UNKNOWN_MODEL_OUTPUT_PER_MILLION,
            )
        return (
            (input_tokens / 1_000_000) * UNKNOWN_MODEL_INPUT_PER_MILLION
            + (output_tokens / 1_000_000) * UNKNOWN_MODEL_OUTPUT_PER_MILLION
        )

    def invoke(self, request: InvocationRequest) -> InvocationResult:
        agent = request.agent
        llm = self._model_for(agent)
        try:
            response = llm.invoke(self._messages(request))
        except Exception as e:
            raise AgentFailure(agent.name, f"Model call failed: {e}") from e

        usage = getattr(response, "usage_metadata", None) or {}
        input_tokens = int(usage.get("input_tokens", 0))
        output_tokens = int(usage.get("output_tokens", 0))
        tokens = int(usage.get("total_tokens", input_tokens + output_tokens))
        cost = self._price(agent, input_tokens, output_tokens) if tokens else 0.0

        content = response.content
        if agent.params.get("output_format") == "json":
            try:
                content = json.loads(content)
            except (TypeError, ValueError) as e:
                raise AgentFailure(
                    agent.name, f"Reply is not valid JSON: {e}", cost_usd=cost, tokens=tokens,
                ) from e

        logger.debug("Agent %s: %d tokens, $%.6f", agent.name, tokens, cost)
        return InvocationResult(output=content, tokens=tokens, cost_usd=cost)
