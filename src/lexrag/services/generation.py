"""Generation backends for lexrag."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol, Sequence

from lexrag.models import Message, TokenUsage
from lexrag.schemas import GenerationOptions
from lexrag.services.prompt import estimate_token_count

LOGGER = logging.getLogger(__name__)

_WORD = re.compile(r"\S+\s*")


class GenerationError(RuntimeError):
    """Raised when a generator cannot produce a completion."""


@dataclass(frozen=True)
class Completion:
    content: str
    model: str
    usage: TokenUsage


@dataclass(frozen=True)
class StreamChunk:
    content: str
    done: bool = False
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 512
    temperature: float = 0.3
    use_model: bool = False
    device: str | None = None
    input_cost_per_1k: float = 0.0
    output_cost_per_1k: float = 0.0


class Generator(Protocol):
    """Protocol describing completion and streaming behaviour."""

    provider: str
    model: str

    async def complete(self, messages: Sequence[Message], options: GenerationOptions | None = None) -> Completion:
        """Return the full completion for the supplied messages."""

    def stream(self, messages: Sequence[Message], options: GenerationOptions | None = None) -> AsyncIterator[StreamChunk]:
        """Yield completion deltas; the last chunk has ``done=True``."""

    def calculate_cost(self, usage: TokenUsage) -> float:
        """Return the estimated USD cost of ``usage``."""


def _last_user_message(messages: Sequence[Message]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""


def _usage_for(messages: Sequence[Message], content: str) -> TokenUsage:
    return TokenUsage(
        input_tokens=sum(estimate_token_count(message.content) for message in messages),
        output_tokens=estimate_token_count(content),
    )


class TemplateGenerator:
    """Deterministic generator used for tests and offline environments."""

    provider = "template"
    model = "template"

    def __init__(self, excerpt_chars: int = 400) -> None:
        self._excerpt_chars = excerpt_chars

    def render(self, messages: Sequence[Message]) -> str:
        prompt = _last_user_message(messages).strip()
        if not prompt:
            return "אין די מידע בהקשר כדי לענות על השאלה."
        excerpt = prompt[: self._excerpt_chars]
        if len(prompt) > self._excerpt_chars:
            excerpt += "..."
        return f"על סמך ההקשר המשפטי שסופק:\n\n{excerpt}"

    async def complete(self, messages: Sequence[Message], options: GenerationOptions | None = None) -> Completion:
        content = self.render(messages)
        return Completion(content=content, model=self.model, usage=_usage_for(messages, content))

    async def stream(
        self, messages: Sequence[Message], options: GenerationOptions | None = None
    ) -> AsyncIterator[StreamChunk]:
        content = self.render(messages)
        for word in _WORD.findall(content):
            yield StreamChunk(content=word)
        yield StreamChunk(content="", done=True, usage=_usage_for(messages, content))

    def calculate_cost(self, usage: TokenUsage) -> float:
        return 0.0


class TransformersGenerator:
    """Generator that optionally runs a local causal LM via Transformers."""

    provider = "transformers"

    def __init__(self, config: GenerationConfig | None = None, fallback: TemplateGenerator | None = None) -> None:
        self._config = config or GenerationConfig()
        self._fallback = fallback or TemplateGenerator()
        self._tokenizer = None
        self._model = None
        if not self._config.use_model:
            LOGGER.info("TransformersGenerator running in template-only mode.")
            return
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(self._config.model, trust_remote_code=True)
            self._model = AutoModelForCausalLM.from_pretrained(self._config.model, trust_remote_code=True)
            if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
                self._tokenizer.pad_token = self._tokenizer.eos_token
            if getattr(self._model.config, "pad_token_id", None) is None and self._tokenizer.pad_token_id is not None:
                self._model.config.pad_token_id = self._tokenizer.pad_token_id
            if self._config.device:
                self._model.to(self._config.device)
            LOGGER.info("Loaded generation model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - optional dependency
            LOGGER.warning("Falling back to template generator: %s", exc)
            self._tokenizer = None
            self._model = None

    @property
    def model(self) -> str:
        if self._model is None:
            return self._fallback.model
        return self._config.model

    @property
    def uses_model(self) -> bool:
        return self._model is not None

    async def complete(self, messages: Sequence[Message], options: GenerationOptions | None = None) -> Completion:
        if self._model is None:
            return await self._fallback.complete(messages, options)
        try:
            content = await asyncio.to_thread(self._generate, messages, options)
        except Exception as exc:
            raise GenerationError(f"Local generation with {self._config.model} failed: {exc}") from exc
        return Completion(content=content, model=self.model, usage=_usage_for(messages, content))

    async def stream(
        self, messages: Sequence[Message], options: GenerationOptions | None = None
    ) -> AsyncIterator[StreamChunk]:
        if self._model is None:
            async for chunk in self._fallback.stream(messages, options):
                yield chunk
            return
        from transformers import TextIteratorStreamer

        streamer = TextIteratorStreamer(self._tokenizer, skip_prompt=True, skip_special_tokens=True)
        worker = asyncio.ensure_future(asyncio.to_thread(self._generate_streaming, messages, options, streamer))
        parts: list[str] = []
        try:
            while True:
                piece = await asyncio.to_thread(next, streamer, None)
                if piece is None:
                    break
                if piece:
                    parts.append(piece)
                    yield StreamChunk(content=piece)
            await worker
        except Exception as exc:
            raise GenerationError(f"Local generation with {self._config.model} failed: {exc}") from exc
        yield StreamChunk(content="", done=True, usage=_usage_for(messages, "".join(parts).strip()))

    def calculate_cost(self, usage: TokenUsage) -> float:
        return (
            usage.input_tokens / 1000 * self._config.input_cost_per_1k
            + usage.output_tokens / 1000 * self._config.output_cost_per_1k
        )

    def _generate(self, messages: Sequence[Message], options: GenerationOptions | None) -> str:
        import torch

        input_ids, kwargs = self._generation_inputs(messages, options)
        prompt_length = input_ids.shape[1]
        with torch.no_grad():
            output = self._model.generate(input_ids, **kwargs)
        generated_tokens = output[0][prompt_length:]
        return self._tokenizer.decode(generated_tokens, skip_special_tokens=True).strip()

    def _generate_streaming(
        self, messages: Sequence[Message], options: GenerationOptions | None, streamer: Any
    ) -> None:
        import torch

        input_ids, kwargs = self._generation_inputs(messages, options)
        try:
            with torch.no_grad():
                self._model.generate(input_ids, streamer=streamer, **kwargs)
        except Exception:
            # unblock the consumer waiting on the streamer queue
            streamer.end()
            raise

    def _generation_inputs(
        self, messages: Sequence[Message], options: GenerationOptions | None
    ) -> tuple[Any, dict[str, Any]]:
        chat = [{"role": message.role, "content": message.content} for message in messages]
        if hasattr(self._tokenizer, "apply_chat_template"):
            prompt = self._tokenizer.apply_chat_template(chat, tokenize=False, add_generation_prompt=True)
        else:
            prompt = "\n\n".join(f"{turn['role']}: {turn['content']}" for turn in chat) + "\n\nassistant:"
        tokenized = self._tokenizer(prompt, return_tensors="pt", padding=True)
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        if self._config.device:
            input_ids = input_ids.to(self._config.device)
            attention_mask = attention_mask.to(self._config.device)
        temperature = self._config.temperature
        max_new_tokens = self._config.max_new_tokens
        if options is not None:
            if options.temperature is not None:
                temperature = options.temperature
            if options.max_tokens is not None:
                max_new_tokens = options.max_tokens
        return input_ids, {
            "attention_mask": attention_mask,
            "max_new_tokens": max_new_tokens,
            "do_sample": temperature > 0,
            "temperature": temperature if temperature > 0 else None,
        }


__all__ = [
    "Completion",
    "GenerationConfig",
    "GenerationError",
    "Generator",
    "StreamChunk",
    "TemplateGenerator",
    "TransformersGenerator",
]
