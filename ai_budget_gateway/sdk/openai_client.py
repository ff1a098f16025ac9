"""
Governed OpenAI client.

Routes chat completions through a BudgetGateway. The class doubles as the
gateway's inference client: invoke() performs the raw OpenAI call.
"""

from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ..core.errors import UpstreamRateLimited
from ..core.gateway import BudgetGateway, GatewayResult, InferenceRequest, InferenceResponse
from ..core.token_counter import TokenUsage


def _retry_after(error: openai.RateLimitError) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class GovernedOpenAI:
    """OpenAI chat client whose every call is budget-governed.

    Rate-limit errors are translated to UpstreamRateLimited so the gateway
    can open its breaker; every other OpenAI error propagates unmodified.
    """

    def __init__(self, model: str, gateway: BudgetGateway, client: Optional[OpenAI] = None):
        """Initialize governed OpenAI client.

        Args:
            model: Default OpenAI model name (required)
            gateway: Gateway shared by every caller in the process
            client: Preconfigured OpenAI client (a default one is created if omitted)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.gateway = gateway
        self.client = client or OpenAI()

    def invoke(self, model: str, request: InferenceRequest) -> InferenceResponse:
        """Perform the OpenAI call for an already admitted request."""
        messages = list(request.messages)
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})

        kwargs: Dict[str, Any] = dict(request.extra)
        if request.functions:
            kwargs["tools"] = [{"type": "function", "function": schema} for schema in request.functions]

        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=request.temperature,
                max_tokens=request.max_output_units,
                **kwargs
            )
        except openai.RateLimitError as e:
            raise UpstreamRateLimited(str(e), retry_after=_retry_after(e)) from e

        usage = getattr(response, "usage", None)
        token_usage = None
        if usage is not None:
            token_usage = TokenUsage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens
            )
        return InferenceResponse(response=response, usage=token_usage)

    def chat(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_prompt: Optional[str] = None,
        functions: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        **kwargs: Any
    ) -> GatewayResult:
        """Create a governed chat completion.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            system_prompt: Prepended as a system message (optional)
            functions: Function schemas, sent as tools (optional)
            model: Overrides the client's default model (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            GatewayResult wrapping the OpenAI response

        Raises:
            ValueError: If messages is empty
            QuotaExceeded: If the budget refuses the call
            UpstreamRateLimited: If OpenAI throttled the call
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request = InferenceRequest(
            model=model or self.model,
            messages=messages,
            system_prompt=system_prompt,
            functions=functions,
            temperature=temperature,
            max_output_units=max_tokens,
            extra=kwargs
        )
        return self.gateway.execute(request, client=self)
