"""LangChain-backed model provider.

LangChainModelProvider implements the ModelProvider protocol against any
OpenAI-compatible chat endpoint (Anthropic's OpenAI compatibility layer,
OpenAI, Ollama, vLLM) through langchain-openai's ChatOpenAI.

ModelProviderFactory builds one provider per agent role from the
`llm_providers` section of the pipeline config, so agents never share a
client.

Source:
- src/agentflow/agents/executor.py (ModelProvider)
- src/agentflow/config.py (LLMProviderConfig)
"""

import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_openai import ChatOpenAI

from agentflow.agents.models import (
    ChatMessage,
    MessageRole,
    ModelResponse,
    TokenUsage,
    ToolCall,
    ToolSpec,
)
from agentflow.config import LLMProviderConfig


logger = logging.getLogger(__name__)


class ProviderNotConfiguredError(Exception):
    """Raised when a role names a provider missing from the config.

    Attributes:
        provider: The unknown provider name.
    """

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"LLM provider not configured: {provider}")


def _to_langchain(message: ChatMessage) -> BaseMessage:
    if message.role == MessageRole.SYSTEM:
        return SystemMessage(content=message.content)
    if message.role == MessageRole.USER:
        return HumanMessage(content=message.content)
    if message.role == MessageRole.TOOL:
        return ToolMessage(content=message.content, tool_call_id=message.tool_call_id or "")
    return AIMessage(
        content=message.content,
        tool_calls=[
            {"id": call.id, "name": call.name, "args": call.arguments}
            for call in message.tool_calls
        ],
    )


def _to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters,
        },
    }


def _content_text(content: Any) -> str:
    """Flatten LangChain message content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


class LangChainModelProvider:
    """ModelProvider backed by ChatOpenAI.

    The underlying client is created lazily on first use.

    Attributes:
        provider_name: Provider name from the config (e.g. "anthropic").
        model_name: Model identifier sent to the endpoint.
        base_url: OpenAI-compatible endpoint URL.
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        provider_name: str,
        model_name: str,
        base_url: str,
        api_key: Optional[str] = None,
        temperature: float = 0.0,
        timeout: float = 300.0,
    ):
        self.provider_name = provider_name
        self.model_name = model_name
        self.base_url = base_url
        self.temperature = temperature
        self.timeout = timeout
        self._api_key = api_key
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        """Get or create the LangChain chat model instance."""
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.base_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self._api_key or "not-needed",
            )
        return self._llm

    async def complete(
        self,
        messages: List[ChatMessage],
        tools: List[ToolSpec],
    ) -> ModelResponse:
        runnable = self.llm
        if tools:
            runnable = runnable.bind_tools([_to_openai_tool(t) for t in tools])

        response = await runnable.ainvoke([_to_langchain(m) for m in messages])

        tool_calls = [
            ToolCall(
                id=call.get("id") or f"call_{index}",
                name=call["name"],
                arguments=call.get("args") or {},
            )
            for index, call in enumerate(getattr(response, "tool_calls", None) or [])
        ]

        usage = TokenUsage()
        usage_metadata = getattr(response, "usage_metadata", None)
        if usage_metadata:
            usage = TokenUsage(
                input=int(usage_metadata.get("input_tokens", 0)),
                output=int(usage_metadata.get("output_tokens", 0)),
            )

        return ModelResponse(
            text=_content_text(response.content),
            tool_calls=tool_calls,
            usage=usage,
        )


class ModelProviderFactory:
    """Builds a fresh LangChainModelProvider per (provider, model).

    Attributes:
        providers: Provider endpoint configuration by name.
    """

    def __init__(
        self,
        providers: Mapping[str, LLMProviderConfig],
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.providers = dict(providers)
        self._environ = environ if environ is not None else os.environ

    def create(self, provider: str, model: str) -> LangChainModelProvider:
        """Create a provider client for model on the named provider.

        Raises:
            ProviderNotConfiguredError: If provider is not in the config.
        """
        config = self.providers.get(provider)
        if config is None:
            raise ProviderNotConfiguredError(provider)

        api_key = self._environ.get(config.api_key_env) if config.api_key_env else None
        if config.api_key_env and not api_key:
            logger.warning(
                "API key environment variable is not set",
                extra={"provider": provider, "api_key_env": config.api_key_env},
            )

        return LangChainModelProvider(
            provider_name=provider,
            model_name=model,
            base_url=config.base_url,
            api_key=api_key,
            temperature=config.temperature,
            timeout=config.timeout_seconds,
        )
