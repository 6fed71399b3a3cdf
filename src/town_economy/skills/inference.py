"""LLM collaborator for generative skills."""

from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass
class InferenceResponse:
    content: str
    model: str
    cost_cents: float = 0.0
    latency_ms: int = 0


class InferenceClient(Protocol):
    model: str

    def complete(self, messages: list[dict[str, str]], *, temperature: float) -> InferenceResponse: ...


class LiteLLMInference:
    """Single-shot chat completion through litellm."""

    def __init__(self, model: str, timeout_seconds: int) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds

    def complete(self, messages: list[dict[str, str]], *, temperature: float) -> InferenceResponse:
        import litellm

        start = time.monotonic()
        response = litellm.completion(
            model=self.model,
            messages=messages,
            temperature=temperature,
            timeout=self.timeout_seconds,
            num_retries=1,
        )
        latency_ms = int((time.monotonic() - start) * 1000)
        try:
            cost_cents = float(litellm.completion_cost(completion_response=response)) * 100
        except Exception:
            # Unpriced models raise here; the completion itself is still usable.
            cost_cents = 0.0
        return InferenceResponse(
            content=response.choices[0].message.content or "",
            model=self.model,
            cost_cents=cost_cents,
            latency_ms=latency_ms,
        )


def complete_with_timeout(
    client: InferenceClient,
    messages: list[dict[str, str]],
    *,
    temperature: float,
    timeout_seconds: float,
) -> InferenceResponse:
    """Run ``client.complete`` in a worker thread; raises TimeoutError past the deadline."""
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(client.complete, messages, temperature=temperature)
        return future.result(timeout=timeout_seconds)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def parse_json_object(payload: str) -> dict[str, Any]:
    """Extract the outermost JSON object from a model reply."""
    start = payload.find("{")
    end = payload.rfind("}") + 1
    if start < 0 or end <= start:
        raise ValueError("no JSON object in reply")
    parsed = json.loads(payload[start:end])
    if not isinstance(parsed, dict):
        raise ValueError("reply JSON is not an object")
    return parsed
