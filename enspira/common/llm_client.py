"""
Provider-agnostic async LLM client for Enspira.

Supports Anthropic, OpenAI (or any OpenAI-compatible server) and Google
Gemini with a shared text-generation interface.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Optional

from .config import LLMConfig

logger = logging.getLogger("enspira.common.llm_client")


def resolve_provider(config: LLMConfig) -> str:
    """Resolve ``"auto"`` to the first provider that has a key."""
    provider = (config.provider or "auto").lower()
    if provider != "auto":
        return provider
    if config.anthropic_api_key:
        return "anthropic"
    if config.openai_api_key or config.openai_base_url:
        return "openai"
    if config.google_api_key:
        return "google"
    return "openai"


class LLMClient:
    """Unified async text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "openai",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        openai_base_url: Optional[str] = None,
        google_api_key: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self.provider = (provider or "openai").lower()
        self.model = model
        self.timeout = timeout
        self._client = None

        if self.provider == "auto":
            raise ValueError(
                '"auto" provider must be resolved before creating LLMClient. '
                'Use resolve_provider() or LLMClient.from_config().'
            )

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            # Local OpenAI-compatible servers usually run without a key
            if not openai_api_key and not openai_base_url:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(
                    api_key=openai_api_key or "not-needed",
                    base_url=openai_base_url or None,
                )
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai  # Store the module, not a model instance
                self._google_models = {}  # Cache models by system prompt hash
            except ImportError:
                logger.warning("google-generativeai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @classmethod
    def from_config(cls, config: LLMConfig) -> "LLMClient":
        provider = resolve_provider(config)
        models = {
            "anthropic": config.anthropic_model,
            "openai": config.openai_model,
            "google": config.google_model,
        }
        return cls(
            provider=provider,
            model=models.get(provider, ""),
            anthropic_api_key=config.anthropic_api_key or None,
            openai_api_key=config.openai_api_key or None,
            openai_base_url=config.openai_base_url or None,
            google_api_key=config.google_api_key or None,
            timeout=config.timeout,
        )

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: Optional[float] = None,
    ) -> str:
        """Generate a completion.

        Raises:
            RuntimeError: client unavailable or provider unsupported.
            asyncio.TimeoutError: the call exceeded ``timeout``.
        """
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

        timeout = timeout or self.timeout
        return await asyncio.wait_for(
            self._generate(prompt, system=system, max_tokens=max_tokens, timeout=timeout),
            timeout=timeout,
        )

    async def _generate(
        self,
        prompt: str,
        *,
        system: Optional[str],
        max_tokens: int,
        timeout: float,
    ) -> str:
        # SDK timeouts surface as asyncio.TimeoutError like our own deadline
        if self.provider == "anthropic":
            import anthropic

            kwargs = {}
            if system:
                kwargs["system"] = system
            try:
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                    timeout=timeout,
                    **kwargs,
                )
            except anthropic.APITimeoutError as e:
                raise asyncio.TimeoutError("Anthropic request timed out") from e
            return response.content[0].text.strip()

        if self.provider == "openai":
            import openai

            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            try:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=messages,
                    timeout=timeout,
                )
            except openai.APITimeoutError as e:
                raise asyncio.TimeoutError("OpenAI request timed out") from e
            return (response.choices[0].message.content or "").strip()

        if self.provider == "google":
            from google.api_core import exceptions as google_exceptions

            cache_key = hashlib.md5((system or "").encode()).hexdigest()
            if cache_key not in self._google_models:
                kwargs = {"model_name": self.model}
                if system:
                    kwargs["system_instruction"] = system
                self._google_models[cache_key] = self._client.GenerativeModel(**kwargs)
            model = self._google_models[cache_key]
            try:
                response = await model.generate_content_async(
                    prompt,
                    generation_config={"max_output_tokens": max_tokens},
                    request_options={"timeout": timeout},
                )
            except google_exceptions.DeadlineExceeded as e:
                raise asyncio.TimeoutError("Gemini request timed out") from e
            return response.text.strip()

        raise RuntimeError(f"Unsupported LLM provider: {self.provider}")

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if self.provider in ("anthropic", "openai") and close is not None:
            await close()
