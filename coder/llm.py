"""Model client: litellm wrapper, provider table, retry policy and usage accounting."""

import json
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from . import fmt
from .report import APIRequestError, ConfigError
from .tools import ToolCall


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    estimated_cost: float = 0.0


@dataclass
class Choice:
    content: str = ""
    reasoning_content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"


@dataclass
class ModelResponse:
    choices: list[Choice]
    usage: Usage = field(default_factory=Usage)


class UsageTotals:
    """Running token and cost totals for one session."""

    def __init__(self):
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.cached_tokens = 0
        self.total_tokens = 0
        self.total_cost = 0.0
        self.calls = 0

    def add(self, usage: Usage) -> None:
        self.calls += 1
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.cached_tokens += usage.cached_tokens
        self.total_tokens += usage.total_tokens or (
            usage.prompt_tokens + usage.completion_tokens
        )
        self.total_cost += usage.estimated_cost

    def as_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cached_tokens": self.cached_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": round(self.total_cost, 6),
            "calls": self.calls,
        }


class ModelClient(Protocol):
    def send(
        self, messages: list[dict], tools: list[dict], reasoning: str
    ) -> ModelResponse: ...

    def context_limit(self) -> int: ...


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Provider:
    name: str
    prefix: str
    api_key_env: str | None
    default_model: str
    default_base_url: str | None = None


PROVIDERS = {
    "deepinfra": Provider(
        "deepinfra", "deepinfra/", "DEEPINFRA_API_KEY", "openai/gpt-oss-120b"
    ),
    "ollama": Provider(
        "ollama", "ollama_chat/", None, "gpt-oss:20b", "http://localhost:11434"
    ),
    "openrouter": Provider(
        "openrouter", "openrouter/", "OPENROUTER_API_KEY", "openai/gpt-oss-120b"
    ),
    "groq": Provider("groq", "groq/", "GROQ_API_KEY", "openai/gpt-oss-120b"),
    "deepseek": Provider("deepseek", "deepseek/", "DEEPSEEK_API_KEY", "deepseek-chat"),
    "cerebras": Provider("cerebras", "cerebras/", "CEREBRAS_API_KEY", "gpt-oss-120b"),
}

DEFAULT_CONTEXT_LIMIT = 32000

# Substring -> context size, for models litellm does not know about.
_CONTEXT_LIMITS = (
    ("deepseek-chat", 64000),
    ("deepseek", 32000),
    ("claude", 200000),
    ("gpt-oss", 128000),
    ("gpt-4o", 128000),
    ("gpt-4", 32000),
    ("gemini", 128000),
    ("qwen3-coder", 256000),
    ("llama-3.1", 32000),
)


def default_provider() -> str:
    return "deepinfra" if os.environ.get("DEEPINFRA_API_KEY") else "ollama"


def get_provider(name: str) -> Provider:
    try:
        return PROVIDERS[name]
    except KeyError:
        raise ConfigError(
            f"unknown provider {name!r}, expected one of: {', '.join(PROVIDERS)}"
        )


def model_string(provider: Provider, model: str) -> str:
    """litellm model id, e.g. ``deepinfra/openai/gpt-oss-120b``."""
    if model.startswith(provider.prefix):
        return model
    return provider.prefix + model


def fallback_context_limit(model: str) -> int:
    lowered = model.lower()
    for needle, limit in _CONTEXT_LIMITS:
        if needle in lowered:
            return limit
    return DEFAULT_CONTEXT_LIMIT


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass
class RateLimitSignal:
    """What a 429 response told us about when to try again."""

    wait: float | None = None
    daily_limit: bool = False


def read_rate_limit_signal(
    exc: Exception, now: Callable[[], float] = time.time
) -> RateLimitSignal | None:
    """Interpret an exception as a rate-limit signal, or None if it isn't one.

    Understands ``Retry-After`` (seconds) and ``X-RateLimit-Reset`` (epoch
    milliseconds, as sent by OpenRouter).
    """
    if getattr(exc, "status_code", None) != 429:
        return None
    signal = RateLimitSignal(daily_limit="daily limit" in str(exc).lower())

    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    retry_after = headers.get("retry-after") or headers.get("Retry-After")
    reset = headers.get("x-ratelimit-reset") or headers.get("X-RateLimit-Reset")
    if retry_after is not None:
        try:
            signal.wait = float(retry_after)
        except ValueError:
            pass
    elif reset is not None:
        try:
            wait = int(reset) / 1000 - now() + 2
        except ValueError:
            wait = 0
        if wait > 0:
            signal.wait = wait
    return signal


class RetryPolicy:
    """Exponential backoff on rate limits, shared by every provider."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        signal_reader: Callable[[Exception], RateLimitSignal | None] = (
            read_rate_limit_signal
        ),
        sleep: Callable[[float], None] = time.sleep,
        verbose: bool = False,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.signal_reader = signal_reader
        self.sleep = sleep
        self.verbose = verbose

    def delay(self, attempt: int, signal: RateLimitSignal) -> float:
        if signal.wait is not None and signal.wait > 0:
            return min(signal.wait, self.max_delay)
        return min(self.base_delay * (2**attempt), self.max_delay)

    def run(self, fn: Callable[[], object]):
        """Call fn, retrying rate-limited attempts. Any other failure, a
        daily limit, or running out of retries raises APIRequestError."""
        for attempt in range(self.max_retries + 1):
            try:
                return fn()
            except APIRequestError:
                raise
            except Exception as e:
                signal = self.signal_reader(e)
                if signal is None:
                    raise APIRequestError(f"LLM call failed: {e}") from e
                if signal.daily_limit:
                    raise APIRequestError(f"daily limit exceeded: {e}") from e
                if attempt >= self.max_retries:
                    raise APIRequestError(
                        f"rate limited after {self.max_retries} retries: {e}"
                    ) from e
                wait = self.delay(attempt, signal)
                if self.verbose:
                    fmt.warning(
                        f"rate limit hit (attempt {attempt + 1}/{self.max_retries + 1}), "
                        f"waiting {wait:.1f}s before retry"
                    )
                self.sleep(wait)
        raise APIRequestError("max retries exceeded")


# ---------------------------------------------------------------------------
# litellm client
# ---------------------------------------------------------------------------


def _wire_messages(messages: list[dict]) -> list[dict]:
    """Strip fields the providers don't accept (reasoning_content)."""
    return [{"role": m["role"], "content": m.get("content") or ""} for m in messages]


def _parse_tool_calls(raw) -> list[ToolCall]:
    calls = []
    for i, tc in enumerate(raw or [], start=1):
        fn = getattr(tc, "function", None)
        if fn is None and isinstance(tc, dict):
            fn = tc.get("function") or {}
            name, arguments = fn.get("name"), fn.get("arguments")
            call_id = tc.get("id")
        else:
            name, arguments = fn.name, fn.arguments
            call_id = getattr(tc, "id", None)
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        calls.append(
            ToolCall(id=call_id or f"call_{i}", name=name or "", arguments=arguments or "{}")
        )
    return calls


def _response_cost(response, usage) -> float:
    cost = getattr(usage, "cost", None)
    if isinstance(cost, (int, float)):
        return float(cost)
    hidden = getattr(response, "_hidden_params", None) or {}
    cost = hidden.get("response_cost")
    if isinstance(cost, (int, float)):
        return float(cost)

    import litellm

    try:
        return float(litellm.completion_cost(completion_response=response) or 0.0)
    except Exception:
        # Unknown pricing for this model.
        return 0.0


def parse_response(response) -> ModelResponse:
    """Convert a litellm ModelResponse into our own dataclasses."""
    choices = []
    for choice in response.choices:
        message = choice.message
        choices.append(
            Choice(
                content=getattr(message, "content", None) or "",
                reasoning_content=getattr(message, "reasoning_content", None) or "",
                tool_calls=_parse_tool_calls(getattr(message, "tool_calls", None)),
                finish_reason=choice.finish_reason or "stop",
            )
        )

    raw_usage = getattr(response, "usage", None)
    usage = Usage()
    if raw_usage is not None:
        details = getattr(raw_usage, "prompt_tokens_details", None)
        usage = Usage(
            prompt_tokens=getattr(raw_usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(raw_usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(raw_usage, "total_tokens", 0) or 0,
            cached_tokens=getattr(details, "cached_tokens", 0) or 0,
            estimated_cost=_response_cost(response, raw_usage),
        )
    return ModelResponse(choices=choices, usage=usage)


class LiteLLMClient:
    """ModelClient backed by litellm.completion()."""

    def __init__(
        self,
        provider: str,
        model: str | None = None,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        context_limit: int | None = None,
        retry: RetryPolicy | None = None,
        verbose: bool = False,
    ):
        self.provider = get_provider(provider)
        self.model = model or self.provider.default_model
        self.api_key = api_key or (
            os.environ.get(self.provider.api_key_env)
            if self.provider.api_key_env
            else None
        )
        if self.provider.api_key_env and not self.api_key:
            raise ConfigError(
                f"{self.provider.name} requires an API key: set "
                f"{self.provider.api_key_env} or pass --api-key"
            )
        self.base_url = base_url or self.provider.default_base_url
        self.timeout = timeout
        self.retry = retry or RetryPolicy(verbose=verbose)
        self.verbose = verbose
        self._context_limit = context_limit

    @property
    def model_string(self) -> str:
        return model_string(self.provider, self.model)

    def context_limit(self) -> int:
        if self._context_limit:
            return self._context_limit

        import litellm

        try:
            info = litellm.get_model_info(self.model_string)
            limit = info.get("max_input_tokens") or info.get("max_tokens")
        except Exception:
            # Not in litellm's model map.
            limit = None
        self._context_limit = int(limit) if limit else fallback_context_limit(self.model)
        return self._context_limit

    def send(
        self, messages: list[dict], tools: list[dict], reasoning: str
    ) -> ModelResponse:
        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(
            model=self.model_string,
            messages=_wire_messages(messages),
            tools=tools,
            tool_choice="auto",
            reasoning_effort=reasoning,
            drop_params=True,
        )
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        if self.timeout:
            kwargs["timeout"] = self.timeout

        response = self.retry.run(lambda: litellm.completion(**kwargs))
        parsed = parse_response(response)
        if not parsed.choices:
            raise APIRequestError("no response choices returned")
        return parsed
