import asyncio
import threading
import random
import time
import traceback
from typing import Callable, TypeVar, Any, Dict, List, Optional

import openai
from openai import OpenAI
from langchain_core.messages import HumanMessage, AIMessage, SystemMessage

from classes.app_config import parse_model_name, is_openai_model, estimate_cost_usd
from classes.settings import logger

T = TypeVar("T")


class MaxRetryErrorsException(Exception):
    pass


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def is_rate_limit_error(e: BaseException | None) -> bool:
    if e is None:
        return False
    if isinstance(e, openai.RateLimitError):
        return True
    return getattr(e, "code", None) in ("insufficient_quota", "rate_limit_exceeded")


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with global 429/timeout backoff + retries.
    Quota exhaustion is not retried: waiting does not refill a quota.
    """
    last_exception: Exception | None = None

    def _is_timeout_error(e: Exception) -> bool:
        if isinstance(e, (asyncio.TimeoutError, openai.APITimeoutError)):
            return True
        msg = repr(e)
        return "TimeoutError" in msg or "timed out" in msg.lower()

    def _respect_global_backoff() -> None:
        while True:
            with _global_backoff_lock:
                now = time.monotonic()
                wait = _global_wait_until - now
            if wait <= 0:
                return
            time.sleep(min(wait, 1.0))

    def _register_429_and_get_delay() -> float:
        global _global_wait_until, _global_backoff_seconds

        with _global_backoff_lock:
            now = time.monotonic()
            base = _global_backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
            _global_wait_until = max(_global_wait_until, now + delay)
            return delay

    def _reset_backoff_on_success() -> None:
        global _global_backoff_seconds
        _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if getattr(e, "code", None) == "insufficient_quota":
                if log:
                    log(f"Attempt {attempt+1} hit insufficient_quota, giving up.")
                break

            if is_rate_limit_error(e) or _is_timeout_error(e):
                delay = _register_429_and_get_delay()
                msg = f"Attempt {attempt+1} got 429/timeout, backing off ~{delay:.1f}s."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class ChatLlmClient:
    """
    Minimal wrapper for chat-style use:

        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), ...])

    Under the hood: OpenAI Responses API with input=[{role, content}, ...]
    """

    def __init__(
        self,
        model_name: str,
        *,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        client: Any = None,
    ):
        if not is_openai_model(model_name):
            raise ValueError(f"Unknown LLM provider for model: {model_name}")
        self.model_name, self._openai_params = parse_model_name(model_name)
        self._timeout = timeout
        self.last_usage: Optional[Dict[str, Any]] = None

        if max_output_tokens is not None:
            self._openai_params["max_output_tokens"] = int(max_output_tokens)
        # reasoning models reject sampling parameters
        if temperature is not None and "reasoning" not in self._openai_params:
            self._openai_params["temperature"] = float(temperature)

        if client is None:
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            client = OpenAI(**client_kwargs)
        self._client = client

    def _merge_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None) if resp is not None else None
        if usage is None:
            return
        details = getattr(usage, "input_tokens_details", None)
        inc = {
            "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
            "cached_content_token_count": getattr(details, "cached_tokens", 0) if details else 0,
        }
        inc["accrued_cost"] = estimate_cost_usd(
            llm_model_name=self.model_name,
            prompt_tokens=int(inc["prompt_token_count"]),
            completion_tokens=int(inc["candidates_token_count"]),
            service_tier=self._openai_params.get("service_tier"),
        )
        if self.last_usage is None:
            self.last_usage = inc
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def get_accrued_cost(self) -> float:
        if not self.last_usage:
            return 0.0
        return float(self.last_usage.get("accrued_cost", 0.0))

    def get_total_tokens(self) -> int:
        if not self.last_usage:
            return 0
        return int(self.last_usage.get("total_token_count", 0))

    def _to_openai_messages(self, messages: List[SystemMessage | HumanMessage | AIMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "developer"
            elif isinstance(m, HumanMessage):
                role = "user"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    def _invoke_once(self, messages: List[SystemMessage | HumanMessage | AIMessage]) -> str:
        """
        Single HTTP call without retries/backoff.
        """
        resp = self._client.responses.create(
            model=self.model_name,
            input=self._to_openai_messages(messages),
            **self._openai_params,
        )
        self._merge_usage(resp)

        text = getattr(resp, "output_text", "") or ""
        return text.strip()

    def invoke(
        self,
        messages: List[SystemMessage | HumanMessage | AIMessage],
        *,
        retries: int = 3,
    ) -> str:
        """
        Synchronous chat call with global 429/timeout backoff + retries.
        """
        return call_with_retries_sync(
            lambda: self._invoke_once(messages),
            retries=retries,
            log=lambda msg: logger.warning(f"[CHAT-LLM-RETRY] {msg}"),
        )
