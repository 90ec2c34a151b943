from __future__ import annotations
import asyncio
import inspect
import json
import os
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .errors import ProviderError, SchemaValidationError
from .schemas import CallResponse, validate_response

# Optional third-party SDK imports guarded to avoid hard deps
try:
    from openai import OpenAI as _OpenAIClient  # type: ignore
except Exception:  # pragma: no cover
    _OpenAIClient = None

try:
    import anthropic  # type: ignore
except Exception:  # pragma: no cover
    anthropic = None

try:
    import google.generativeai as genai  # type: ignore
except Exception:  # pragma: no cover
    genai = None

try:
    from mistralai import Mistral as _MistralClient  # type: ignore
except Exception:  # pragma: no cover
    _MistralClient = None

try:
    import cohere as _cohere  # type: ignore
except Exception:  # pragma: no cover
    _cohere = None

try:
    import requests  # type: ignore
except Exception:  # pragma: no cover
    requests = None


class CallRequest(BaseModel):
    """One invocation of a capability function."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    function: str
    domain: Optional[str] = None
    args: List[Any] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, ge=0.0)
    call_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def qualified_name(self) -> str:
        return f"{self.domain}.{self.function}" if self.domain else self.function


class CapabilityProvider:
    """Call contract between the interpreter and whatever executes domain functions.

    ``invoke`` returns the value or raises (any exception is a CallFailure);
    ``ainvoke`` is used when the call runs on the scheduler under a deadline.
    """
    name: str = "base"

    def invoke(self, request: CallRequest) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError

    async def ainvoke(self, request: CallRequest) -> Any:
        return await asyncio.to_thread(self.invoke, request)

    def cancel(self, request: CallRequest) -> None:
        # best effort: the scheduler stops awaiting and discards the result
        logger.debug(f"[provider] {self.name}: cancel {request.qualified_name} ({request.call_id})")


class LocalProvider(CapabilityProvider):
    """Executes domain functions with Python callables (sync or async)."""
    name = "local"

    def __init__(self, functions: Optional[Mapping[str, Mapping[str, Callable[..., Any]]]] = None):
        self.functions: Dict[str, Dict[str, Callable[..., Any]]] = {}
        for domain, table in (functions or {}).items():
            for fname, fn in table.items():
                self.register(domain, fname, fn)

    def register(self, domain: str, name: str, fn: Callable[..., Any]) -> None:
        self.functions.setdefault(domain, {})[name] = fn

    def _resolve(self, request: CallRequest) -> Callable[..., Any]:
        fn = self.functions.get(request.domain or "", {}).get(request.function)
        if fn is None:
            raise ProviderError(f"No local implementation for {request.qualified_name}")
        return fn

    def invoke(self, request: CallRequest) -> Any:
        result = self._resolve(request)(*request.args)
        if inspect.isawaitable(result):
            return asyncio.run(_await(result))
        return result

    async def ainvoke(self, request: CallRequest) -> Any:
        fn = self._resolve(request)
        if inspect.iscoroutinefunction(fn):
            return await fn(*request.args)
        result = await asyncio.to_thread(fn, *request.args)
        if inspect.isawaitable(result):
            return await result
        return result


async def _await(awaitable: Any) -> Any:
    return await awaitable


class DryRunProvider(CapabilityProvider):
    """Deterministic stand-in that never leaves the process."""
    name = "dry-run"

    def invoke(self, request: CallRequest) -> Any:
        args = ", ".join(repr(a) for a in request.args)
        return f"[dry-run] {request.qualified_name}({args})"


# -------- LLM-backed providers ---------

def _with_retries(fn, retries: int = 2, base_delay: float = 0.5):
    last_exc = None
    for i in range(retries + 1):
        try:
            return fn()
        except Exception as e:  # pragma: no cover - network variability
            last_exc = e
            if i == retries:
                break
            time.sleep(base_delay * (2 ** i))
    raise last_exc  # type: ignore


def _system_prompt(request: CallRequest) -> str:
    domain = f" in the '{request.domain}' domain" if request.domain else ""
    return (
        f"You execute the function '{request.function}'{domain} on the given arguments.\n"
        "Respond with JSON only: {\n"
        "  \"ok\": boolean,\n  \"value\": any JSON value (the function result),\n"
        "  \"error\": string (only when ok is false),\n  \"confidence\": number between 0 and 1\n}"
    )


def _build_user_payload(request: CallRequest) -> Dict[str, Any]:
    return {
        "function": request.function,
        "domain": request.domain,
        "args": request.args,
        "call_id": request.call_id,
    }


def _parse_response(function: str, content: str) -> CallResponse:
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text[text.find("{"):] if "{" in text else text
    try:
        parsed = json.loads(text) if text else {}
    except ValueError:
        raise SchemaValidationError(
            f"Response for '{function}' must be valid JSON with ok/value fields.\n"
            f"Received raw content: {text[:200]}..."
        )
    return validate_response(function, parsed)


class LLMProvider(CapabilityProvider):
    """Shared prompt/response contract; subclasses only implement ``_complete``."""
    env_prefix = "OPENAI"
    default_model = ""
    schema_retries = 2

    def _model(self, request: CallRequest) -> str:
        return (
            os.getenv(f"PNL_{self.env_prefix}_MODEL_{request.function.upper()}")
            or os.getenv(f"PNL_{self.env_prefix}_MODEL")
            or self.default_model
        )

    def _complete(self, model: str, messages: List[Dict[str, str]], timeout_s: float) -> str:  # pragma: no cover - abstract
        raise NotImplementedError

    def invoke(self, request: CallRequest) -> Any:
        model = self._model(request)
        timeout_s = request.timeout or float(os.getenv("PNL_PROVIDER_TIMEOUT", "60"))
        network_retries = int(os.getenv("PNL_PROVIDER_RETRIES", "2"))
        messages = [
            {"role": "system", "content": _system_prompt(request)},
            {"role": "user", "content": json.dumps(_build_user_payload(request), default=repr)},
        ]
        last_error: Optional[Exception] = None
        content = ""

        # Schema correction loop
        for attempt in range(self.schema_retries + 1):
            try:
                content = _with_retries(lambda: self._complete(model, messages, timeout_s), retries=network_retries)
            except Exception as e:
                raise ProviderError(f"{self.name}: {request.qualified_name} failed: {e}") from e
            try:
                response = _parse_response(request.function, content)
            except SchemaValidationError as e:
                last_error = e
                if attempt == self.schema_retries:
                    break
                messages.append({"role": "assistant", "content": content})
                messages.append({
                    "role": "user",
                    "content": f"ERROR: Your response failed validation: {e}\n"
                               f"Please CORRECT your JSON output to match the required schema.",
                })
                continue
            if not response.ok:
                raise ProviderError(f"{self.name}: {request.qualified_name} reported failure: {response.error}")
            return response.value

        raise SchemaValidationError(
            f"Schema validation failed after {self.schema_retries} retries. Last error: {last_error}"
        )


class OpenAIProvider(LLMProvider):
    name = "openai"
    env_prefix = "OPENAI"
    default_model = "gpt-4o"

    def __init__(self) -> None:
        if not _OpenAIClient or not os.getenv("OPENAI_API_KEY"):
            raise ProviderError("OpenAI not available: missing client or OPENAI_API_KEY")
        self.client = _OpenAIClient()

    def _complete(self, model, messages, timeout_s):
        resp = self.client.chat.completions.create(model=model, messages=messages, temperature=0.0, timeout=timeout_s)
        return resp.choices[0].message.content if resp and resp.choices else ""


class AnthropicProvider(LLMProvider):
    name = "anthropic"
    env_prefix = "ANTHROPIC"
    default_model = "claude-sonnet-4-5"

    def __init__(self) -> None:
        if not anthropic or not os.getenv("ANTHROPIC_API_KEY"):
            raise ProviderError("Anthropic not available")
        self.client = anthropic.Anthropic(api_key=os.getenv("ANTHROPIC_API_KEY"))

    def _complete(self, model, messages, timeout_s):
        system = "\n".join(m["content"] for m in messages if m["role"] == "system")
        chat = [m for m in messages if m["role"] != "system"]
        msg = self.client.messages.create(
            model=model,
            max_tokens=1000,
            temperature=0.0,
            system=system,
            messages=chat,
            timeout=timeout_s,
        )
        return "".join(part.text for part in msg.content if getattr(part, "type", "") == "text")


class GeminiProvider(LLMProvider):
    name = "gemini"
    env_prefix = "GEMINI"
    default_model = "gemini-2.0-flash"

    def __init__(self) -> None:
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not genai or not api_key:
            raise ProviderError("Gemini not available")
        genai.configure(api_key=api_key)

    def _complete(self, model, messages, timeout_s):
        prompt = "\n\n".join(f"{m['role'].upper()}:\n{m['content']}" for m in messages)
        resp = genai.GenerativeModel(model).generate_content(prompt, request_options={"timeout": timeout_s})
        return resp.text or ""


class MistralProvider(LLMProvider):
    name = "mistral"
    env_prefix = "MISTRAL"
    default_model = "mistral-large-latest"

    def __init__(self) -> None:
        if not _MistralClient or not os.getenv("MISTRAL_API_KEY"):
            raise ProviderError("Mistral not available")
        self.client = _MistralClient(api_key=os.getenv("MISTRAL_API_KEY"))

    def _complete(self, model, messages, timeout_s):
        resp = self.client.chat.complete(model=model, messages=messages, temperature=0.0, timeout_ms=int(timeout_s * 1000))
        return resp.choices[0].message.content if resp and resp.choices else ""


class CohereProvider(LLMProvider):
    name = "cohere"
    env_prefix = "COHERE"
    default_model = "command-r-plus"

    def __init__(self) -> None:
        if not _cohere or not os.getenv("COHERE_API_KEY"):
            raise ProviderError("Cohere not available")
        self.client = _cohere.ClientV2(api_key=os.getenv("COHERE_API_KEY"))

    def _complete(self, model, messages, timeout_s):
        resp = self.client.chat(model=model, messages=messages)
        return "".join(getattr(part, "text", "") for part in resp.message.content or [])


class AzureOpenAIProvider(LLMProvider):
    name = "azure"
    env_prefix = "AZURE"

    def __init__(self) -> None:
        if not requests or not (os.getenv("AZURE_OPENAI_API_KEY") and os.getenv("AZURE_OPENAI_ENDPOINT") and os.getenv("AZURE_OPENAI_DEPLOYMENT")):
            raise ProviderError("Azure OpenAI not available")
        self.api_key = os.getenv("AZURE_OPENAI_API_KEY")
        self.endpoint = os.getenv("AZURE_OPENAI_ENDPOINT").rstrip("/")
        self.deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT")
        self.api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-10-21")

    def _complete(self, model, messages, timeout_s):
        url = f"{self.endpoint}/openai/deployments/{self.deployment}/chat/completions?api-version={self.api_version}"
        headers = {"api-key": self.api_key, "Content-Type": "application/json"}
        r = requests.post(url, headers=headers, json={"messages": messages, "temperature": 0.0}, timeout=timeout_s)
        r.raise_for_status()
        data = r.json()
        return data.get("choices", [{}])[0].get("message", {}).get("content", "")


class OpenRouterProvider(LLMProvider):
    name = "openrouter"
    env_prefix = "OPENROUTER"
    default_model = "openai/gpt-4o"

    def __init__(self) -> None:
        if not requests or not os.getenv("OPENROUTER_API_KEY"):
            raise ProviderError("OpenRouter not available")
        self.api_key = os.getenv("OPENROUTER_API_KEY")

    def _complete(self, model, messages, timeout_s):
        url = "https://openrouter.ai/api/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        r = requests.post(url, headers=headers, json={"model": model, "messages": messages}, timeout=timeout_s)
        r.raise_for_status()
        data = r.json()
        return data.get("choices", [{}])[0].get("message", {}).get("content", "")


class OllamaProvider(LLMProvider):
    name = "ollama"
    env_prefix = "OLLAMA"
    default_model = "llama3.3"

    def __init__(self) -> None:
        if not requests or not os.getenv("OLLAMA_HOST"):
            raise ProviderError("Ollama not available")
        self.base = os.getenv("OLLAMA_HOST").rstrip("/")

    def _complete(self, model, messages, timeout_s):
        r = requests.post(f"{self.base}/api/chat", json={"model": model, "messages": messages, "stream": False}, timeout=timeout_s)
        r.raise_for_status()
        data = r.json()
        if isinstance(data, dict):
            return (data.get("message") or {}).get("content", "")
        return ""


def _env_present(keys: List[str]) -> bool:
    return all(os.getenv(k) for k in keys)


_PROVIDERS = {
    "openai": (OpenAIProvider, lambda: _env_present(["OPENAI_API_KEY"]) and _OpenAIClient),
    "anthropic": (AnthropicProvider, lambda: _env_present(["ANTHROPIC_API_KEY"]) and anthropic),
    "gemini": (GeminiProvider, lambda: (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")) and genai),
    "mistral": (MistralProvider, lambda: _env_present(["MISTRAL_API_KEY"]) and _MistralClient),
    "cohere": (CohereProvider, lambda: _env_present(["COHERE_API_KEY"]) and _cohere),
    "azure": (AzureOpenAIProvider, lambda: _env_present(["AZURE_OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_DEPLOYMENT"]) and requests),
    "openrouter": (OpenRouterProvider, lambda: _env_present(["OPENROUTER_API_KEY"]) and requests),
    "ollama": (OllamaProvider, lambda: os.getenv("OLLAMA_HOST") and requests),
}


def select_provider() -> Optional[CapabilityProvider]:
    """Select an LLM provider based on PNL_AI_PROVIDER or precedence list.

    Precedence: OpenAI → Anthropic → Gemini → Mistral → Cohere → Azure → OpenRouter → Ollama
    """
    forced = (os.getenv("PNL_AI_PROVIDER") or "").strip().lower()

    def _instantiate(name: str) -> Optional[CapabilityProvider]:
        entry = _PROVIDERS.get(name)
        if entry is None:
            logger.warning(f"[provider] unknown provider '{name}'")
            return None
        cls, available = entry
        if not available():
            return None
        try:
            return cls()
        except ProviderError as e:
            logger.warning(f"[provider] {name} unavailable: {e}")
            return None

    if forced:
        return _instantiate(forced)

    for name in _PROVIDERS:
        prov = _instantiate(name)
        if prov:
            return prov
    return None
