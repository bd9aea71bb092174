"""Externally configured AI providers that can answer for extra specialties.

Each integration carries a provider-specific configuration; the provider kind
is the discriminator so an Azure integration cannot be saved without its
resource and deployment, and so on.
"""

import json
import logging
import os
import threading
import uuid
from typing import Annotated, Literal, Union

import requests
from pydantic import BaseModel, Field

from aida.agents import slugify
from aida.errors import GenerationError
from aida.generation import GENERATION_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

INTEGRATIONS_FILE = os.environ.get("AIDA_INTEGRATIONS_FILE", "")

_registry = None


class OpenAIConfig(BaseModel):
    provider: Literal["openai"] = "openai"
    model: str = "gpt-4"
    endpoint: str = "https://api.openai.com/v1/chat/completions"


class AzureConfig(BaseModel):
    provider: Literal["azure"] = "azure"
    resource: str
    deployment: str = "gpt-4"
    api_version: str = "2023-05-15"

    @property
    def endpoint(self) -> str:
        return (
            f"https://{self.resource}.openai.azure.com/openai/deployments/"
            f"{self.deployment}/chat/completions?api-version={self.api_version}"
        )


class CustomConfig(BaseModel):
    provider: Literal["custom"] = "custom"
    endpoint: str
    method: Literal["POST", "PUT"] = "POST"
    request_template: str | None = None
    response_path: str | None = None
    auth_mode: Literal["header", "body", "none"] = "header"
    auth_header_name: str = "Authorization"
    auth_header_prefix: str = "Bearer"
    auth_body_param: str = "api_key"


ProviderConfig = Annotated[Union[OpenAIConfig, AzureConfig, CustomConfig], Field(discriminator="provider")]


class ExternalIntegration(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    specialty: str
    description: str | None = None
    is_active: bool = True
    api_key: str = Field(default="", repr=False)
    config: ProviderConfig

    @property
    def agent_id(self) -> str:
        return slugify(self.specialty)

    def public(self) -> dict:
        """Listing view without the credential."""
        return self.model_dump(exclude={"api_key"})


def extract_path(data, path: str):
    """Follow a dotted path such as 'choices.0.text' through a JSON document."""
    current = data
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


class ExternalGenerator:
    def __init__(
        self,
        integration: ExternalIntegration,
        session: requests.Session | None = None,
        timeout: float = GENERATION_TIMEOUT_SECONDS,
    ):
        self.integration = integration
        self.session = session or requests.Session()
        self.timeout = timeout

    def generate(self, prompt: str, specialty_hint: str | None = None) -> str:
        config = self.integration.config
        try:
            if isinstance(config, CustomConfig):
                return self._call_custom(config, prompt)
            return self._call_chat(config, prompt, specialty_hint)
        except requests.exceptions.RequestException as e:
            raise GenerationError(f"{self.integration.name} request failed: {e}") from e

    def _call_chat(self, config: OpenAIConfig | AzureConfig, prompt: str, specialty_hint: str | None) -> str:
        system_prompt = f"You are an AI assistant specializing in {specialty_hint or self.integration.specialty}."
        body = {
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.7,
            "max_tokens": 1000,
        }
        headers = {"Content-Type": "application/json"}
        if isinstance(config, AzureConfig):
            headers["api-key"] = self.integration.api_key
        else:
            headers["Authorization"] = f"Bearer {self.integration.api_key}"
            body["model"] = config.model

        response = self.session.request("POST", config.endpoint, headers=headers, json=body, timeout=self.timeout)
        response.raise_for_status()
        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise GenerationError(f"{self.integration.name} returned an unexpected payload") from e

    def _call_custom(self, config: CustomConfig, prompt: str) -> str:
        headers = {"Content-Type": "application/json"}
        if config.auth_mode == "header":
            headers[config.auth_header_name] = f"{config.auth_header_prefix} {self.integration.api_key}".strip()

        if config.request_template:
            # Escape the prompt for embedding inside a JSON string literal.
            escaped = json.dumps(prompt)[1:-1]
            try:
                body = json.loads(config.request_template.replace("{{prompt}}", escaped))
            except json.JSONDecodeError as e:
                raise GenerationError(f"{self.integration.name} request template is not valid JSON") from e
        else:
            body = {"prompt": prompt}
        if config.auth_mode == "body" and isinstance(body, dict):
            body[config.auth_body_param] = self.integration.api_key

        response = self.session.request(config.method, config.endpoint, headers=headers, json=body, timeout=self.timeout)
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError as e:
            raise GenerationError(f"{self.integration.name} returned non-JSON response") from e

        if not config.response_path:
            return json.dumps(data)
        text = extract_path(data, config.response_path)
        return "" if text is None else str(text)


class IntegrationRegistry:
    def __init__(self, integrations: list[ExternalIntegration] | None = None):
        self._lock = threading.Lock()
        self._integrations: dict[str, ExternalIntegration] = {}
        for integration in integrations or []:
            self.add(integration)

    def add(self, integration: ExternalIntegration) -> ExternalIntegration:
        with self._lock:
            self._integrations[integration.id] = integration
        logger.info("Registered %s integration %s for %s", integration.config.provider, integration.name, integration.specialty)
        return integration

    def get(self, integration_id: str) -> ExternalIntegration:
        with self._lock:
            if integration_id not in self._integrations:
                raise KeyError(f"Integration {integration_id} not found")
            return self._integrations[integration_id]

    def list_integrations(self, active_only: bool = False) -> list[ExternalIntegration]:
        with self._lock:
            items = list(self._integrations.values())
        if active_only:
            items = [i for i in items if i.is_active]
        return sorted(items, key=lambda i: i.name)

    def deactivate(self, integration_id: str) -> ExternalIntegration:
        with self._lock:
            if integration_id not in self._integrations:
                raise KeyError(f"Integration {integration_id} not found")
            updated = self._integrations[integration_id].model_copy(update={"is_active": False})
            self._integrations[integration_id] = updated
        return updated

    def specialties(self) -> list[str]:
        return [i.specialty for i in self.list_integrations(active_only=True)]

    def generator_for(self, agent_id: str) -> ExternalGenerator | None:
        for integration in self.list_integrations(active_only=True):
            if integration.agent_id == agent_id:
                return ExternalGenerator(integration)
        return None


def load_integrations(path: str) -> list[ExternalIntegration]:
    with open(os.path.abspath(path), "r") as f:
        return [ExternalIntegration(**item) for item in json.load(f)]


def get_integrations() -> IntegrationRegistry:
    global _registry
    if _registry is None:
        integrations = load_integrations(INTEGRATIONS_FILE) if INTEGRATIONS_FILE else []
        _registry = IntegrationRegistry(integrations)
    return _registry
