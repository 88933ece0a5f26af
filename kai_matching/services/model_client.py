"""
Generative model client.

The engine only depends on the GenerativeModel protocol: a prompt plus a JSON
schema in, a JSON object out. Which model answers is irrelevant as long as the
output conforms; callers validate before using it.

AzureOpenAIModel talks to the Azure OpenAI chat completions REST API with a
structured-output (json_schema) response format.

Authentication:
- Managed Identity / DefaultAzureCredential bearer token (preferred)
- API key from Key Vault when one is configured
"""

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

import httpx
from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential

from ..core.errors import (
    ModelCallError,
    ModelTimeoutError,
    ModelUnavailableError,
    SchemaValidationError,
)
from ..core.observability import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

COGNITIVE_SERVICES_SCOPE = "https://cognitiveservices.azure.com/.default"


class GenerativeModel(Protocol):
    async def generate_json(
        self, prompt: str, schema: dict[str, Any], schema_name: str
    ) -> dict[str, Any]:
        """
        Ask the model for a JSON object conforming to `schema`.

        Conformance is requested, not guaranteed.

        Raises:
            ModelTimeoutError: Provider did not answer in time
            ModelCallError: Transport or provider failure
            SchemaValidationError: Response was not a JSON object
        """
        ...


class AzureOpenAIModel:
    """
    One Azure OpenAI deployment.

    Usage:
        model = AzureOpenAIModel(endpoint, deployment="gpt-4o")
        payload = await model.generate_json(prompt, RankingResponse.model_json_schema(), "rankings")
    """

    def __init__(
        self,
        endpoint: str,
        deployment: str,
        api_version: str = "2024-08-01-preview",
        api_key: Optional[str] = None,
        credential: Optional[TokenCredential] = None,
        timeout: float = 30.0,
        temperature: float = 0.2,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            endpoint: https://<resource>.openai.azure.com
            deployment: Deployment name
            api_version: REST API version
            api_key: Key auth; when None a bearer token from `credential` is used
            credential: Azure credential (DefaultAzureCredential if None and no key)
            timeout: HTTP timeout in seconds
            temperature: Sampling temperature
            http_client: Injected client (tests)
        """
        if not endpoint:
            raise ValueError("Azure OpenAI endpoint not configured")

        self.endpoint = endpoint.rstrip("/")
        self.deployment = deployment
        self.api_version = api_version
        self.api_key = api_key
        self.credential = None if api_key else (credential or DefaultAzureCredential())
        self.temperature = temperature
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

        logger.info(
            f"AzureOpenAIModel initialized: deployment={deployment}, "
            f"auth={'api-key' if api_key else 'token'}"
        )

    @property
    def url(self) -> str:
        return (
            f"{self.endpoint}/openai/deployments/{self.deployment}/chat/completions"
            f"?api-version={self.api_version}"
        )

    async def _headers(self) -> dict[str, str]:
        if self.api_key:
            return {"api-key": self.api_key}
        # Sync credentials block on their token endpoint; keep that off the event loop
        try:
            token = await asyncio.to_thread(self.credential.get_token, COGNITIVE_SERVICES_SCOPE)
        except ClientAuthenticationError as e:
            raise ModelCallError(f"Could not acquire Azure OpenAI token: {e}") from e
        return {"Authorization": f"Bearer {token.token}"}

    async def generate_json(
        self, prompt: str, schema: dict[str, Any], schema_name: str
    ) -> dict[str, Any]:
        with tracer.start_as_current_span("azure_openai.generate_json") as span:
            span.set_attribute("deployment", self.deployment)
            span.set_attribute("schema_name", schema_name)
            span.set_attribute("prompt_chars", len(prompt))

            body = {
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.temperature,
                "response_format": {
                    "type": "json_schema",
                    "json_schema": {"name": schema_name, "schema": schema, "strict": False},
                },
            }

            headers = await self._headers()
            try:
                response = await self._client.post(self.url, json=body, headers=headers)
            except httpx.TimeoutException as e:
                raise ModelTimeoutError(f"Azure OpenAI request timed out: {e}") from e
            except httpx.HTTPError as e:
                raise ModelCallError(f"Azure OpenAI request failed: {e}") from e

            span.set_attribute("status_code", response.status_code)
            if response.status_code >= 400:
                raise ModelCallError(
                    f"Azure OpenAI returned {response.status_code}: {response.text[:500]}"
                )

            try:
                data = response.json()
                content = data["choices"][0]["message"]["content"]
                payload = json.loads(content)
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise SchemaValidationError(f"Unparseable model response: {e}") from e

            if not isinstance(payload, dict):
                raise SchemaValidationError("Model response is not a JSON object")

            usage = data.get("usage") or {}
            if usage:
                span.set_attribute("total_tokens", usage.get("total_tokens", 0))
            return payload

    async def aclose(self) -> None:
        await self._client.aclose()


class UnconfiguredModel:
    """Stands in when no model endpoint is configured; every call is unavailable."""

    async def generate_json(
        self, prompt: str, schema: dict[str, Any], schema_name: str
    ) -> dict[str, Any]:
        raise ModelUnavailableError("No generative model endpoint configured")
