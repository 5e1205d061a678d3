"""
Model backend adapter.

The hub sees the language model through one call:

    backend.generate(prompt, temperature, max_tokens, streaming=False, tier=ModelTier.FULL)

Any LangChain chat model works behind it. The default construction
points langchain_openai.ChatOpenAI at an OpenAI-compatible endpoint
(a local Ollama server unless configured otherwise).
"""

from __future__ import annotations

import logging
from typing import Iterator

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

from mcp_hub.config import ModelConfig
from mcp_hub.errors import BackendUnavailable
from mcp_hub.registry import ModelTier

logger = logging.getLogger(__name__)


class ModelBackend:
    """
    Full and fast chat models behind a single generate() call.

    Args:
        full: The model used for planning, decisions and full-tier tools.
        fast: The cheap model for fast-tier calls; falls back to full.
    """

    def __init__(self, full: BaseChatModel, fast: BaseChatModel | None = None):
        self.full = full
        self.fast = fast or full

    @classmethod
    def from_config(cls, config: ModelConfig) -> "ModelBackend":
        from langchain_openai import ChatOpenAI

        def make(model: str) -> ChatOpenAI:
            return ChatOpenAI(
                model=model,
                base_url=config.base_url,
                api_key=config.api_key,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout=config.request_timeout,
            )

        full = make(config.model)
        fast = make(config.fast_model) if config.fast_model else None
        logger.info(
            f"Model backend: {config.model} (fast: {config.fast_model or config.model}) at {config.base_url}"
        )
        return cls(full, fast)

    def model_for(self, tier: ModelTier) -> BaseChatModel:
        return self.fast if tier == ModelTier.FAST else self.full

    def generate(
        self,
        prompt: str,
        temperature: float,
        max_tokens: int,
        streaming: bool = False,
        tier: ModelTier = ModelTier.FULL,
    ) -> str | Iterator[str]:
        """
        Generate text for a prompt.

        Returns the full reply, or an iterator of text chunks when
        streaming is set.

        Raises:
            BackendUnavailable: the model could not be reached.
        """
        model = self.model_for(tier)
        messages = [HumanMessage(content=prompt)]
        logger.debug(f"[{tier.value}] prompt ({len(prompt)} chars): {prompt[:500]}")

        if streaming:
            return self._stream(model, messages, temperature, max_tokens)

        try:
            reply = model.invoke(messages, temperature=temperature, max_tokens=max_tokens)
        except Exception as e:
            logger.error(f"Model backend call failed: {e}")
            raise BackendUnavailable(str(e)) from e

        text = _content_text(reply.content)
        logger.debug(f"[{tier.value}] reply: {text[:500]}")
        return text

    def _stream(self, model, messages, temperature, max_tokens) -> Iterator[str]:
        try:
            for chunk in model.stream(messages, temperature=temperature, max_tokens=max_tokens):
                text = _content_text(chunk.content)
                if text:
                    yield text
        except Exception as e:
            logger.error(f"Model backend stream failed: {e}")
            raise BackendUnavailable(str(e)) from e


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    # Content-block lists, as some providers return them.
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)
