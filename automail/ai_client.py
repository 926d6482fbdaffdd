"""
Automail - KI-Client (Interface + Backends)
Unterstützt: Ollama (lokal), OpenAI (Cloud), Mistral (Cloud)

Zwei Fähigkeiten werden genutzt:
- complete_with_functions(): Function-Calling (Regel-Auswahl, Argument-Generierung)
- complete_structured(): JSON-Antwort gegen ein Schema
"""

from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Type

import requests
from pydantic import BaseModel, ValidationError

from automail.helpers.retry import RetryPolicy

logger = logging.getLogger(__name__)


class AIErrorKind(str, Enum):
    """Fehlerarten des KI-Clients (Grundlage für RetryPolicy.retry_on)"""

    INVALID_ARGUMENTS = "invalid_arguments"  # Modell liefert Argumente, die nicht zum Schema passen
    NO_FUNCTION_CALL = "no_function_call"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    CONNECTION = "connection"
    HTTP = "http"
    INVALID_RESPONSE = "invalid_response"


TRANSIENT_ERROR_KINDS = frozenset(
    {AIErrorKind.RATE_LIMIT, AIErrorKind.CONNECTION, AIErrorKind.TIMEOUT}
)


class AIClientError(Exception):
    """Einziger Fehlertyp des KI-Clients"""

    def __init__(self, kind: AIErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


@dataclass
class FunctionDefinition:
    """Funktion, die dem Modell angeboten wird.

    parameters: JSON-Schema der Argumente.
    args_model: optional - wenn gesetzt, validiert der Client die Argumente
                und wirft AIClientError(INVALID_ARGUMENTS) bei Abweichung.
    """

    name: str
    description: str
    parameters: Dict[str, Any]
    args_model: Optional[Type[BaseModel]] = None

    def to_tool(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class FunctionCallResult:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""


# Security Fix (Layer 3): Input Sanitization for Email Content
def _sanitize_email_input(text: str, max_length: int = 10000) -> str:
    """Sanitizes email content before sending to AI APIs.

    Removes control characters (except newline/tab) and limits the length.
    """
    if not isinstance(text, str):
        return ""

    text = text[:max_length]
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]", "", text)
    return text.strip()


# Security Fix (Layer 3): Safe Error Logging (redact API keys)
def _safe_response_text(response) -> str:
    """Extracts response text safely without exposing API keys."""
    text = (response.text or "")[:200] if response is not None else ""
    return re.sub(r"\b[a-z]{2}-[a-zA-Z0-9]{20,}\b", "[REDACTED_KEY]", text)


def _default_timeout() -> int:
    return int(os.getenv("AI_TIMEOUT", "120"))


def _validate_arguments(
    function: FunctionDefinition, arguments: Dict[str, Any]
) -> Dict[str, Any]:
    if function.args_model is None:
        return arguments
    try:
        return function.args_model.model_validate(arguments).model_dump(by_alias=True)
    except ValidationError as exc:
        raise AIClientError(
            AIErrorKind.INVALID_ARGUMENTS,
            f"Argumente für {function.name} ungültig: {exc.error_count()} Fehler",
        ) from exc


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AIClientError(
            AIErrorKind.INVALID_ARGUMENTS, f"Argumente sind kein JSON: {exc.msg}"
        ) from exc
    if not isinstance(parsed, dict):
        raise AIClientError(AIErrorKind.INVALID_ARGUMENTS, "Argumente sind kein Objekt")
    return parsed


class AIClient(ABC):
    """Abstraktes Interface für KI-Backends"""

    # Transiente Fehler (429, Timeout, Verbindung) werden im Client selbst wiederholt
    transport_retry = RetryPolicy(
        max_attempts=3,
        delay_seconds=2.0,
        backoff=2.0,
        retry_on=lambda kind: kind in TRANSIENT_ERROR_KINDS,
    )

    @abstractmethod
    def complete_with_functions(
        self,
        system: str,
        messages: List[Dict[str, str]],
        functions: List[FunctionDefinition],
        timeout: Optional[int] = None,
        force_function: Optional[str] = None,
    ) -> Optional[FunctionCallResult]:
        """Ruft das Modell im Function-Calling-Modus auf.

        Returns:
            Erster Function-Call der Antwort oder None, wenn das Modell keine
            Funktion aufgerufen hat.

        Raises:
            AIClientError
        """
        raise NotImplementedError

    @abstractmethod
    def complete_structured(
        self,
        system: str,
        prompt: str,
        schema: Type[BaseModel],
        timeout: Optional[int] = None,
    ) -> BaseModel:
        """Lässt das Modell ein JSON-Objekt nach Schema ausfüllen."""
        raise NotImplementedError

    def _resolve_function(
        self, functions: List[FunctionDefinition], name: str, raw_arguments: Any
    ) -> FunctionCallResult:
        arguments = _parse_arguments(raw_arguments)
        function = next((f for f in functions if f.name == name), None)
        if function is not None:
            arguments = _validate_arguments(function, arguments)
        raw = raw_arguments if isinstance(raw_arguments, str) else json.dumps(raw_arguments)
        return FunctionCallResult(name=name, arguments=arguments, raw_arguments=raw)


class OpenAICompatibleClient(AIClient):
    """Chat Completions API mit `tools` (OpenAI, Mistral)."""

    API_URL = "https://api.openai.com/v1/chat/completions"
    LABEL = "OpenAI"

    def __init__(self, api_key: str, model: str):
        if not api_key:
            raise ValueError(f"{self.LABEL} API Key fehlt")
        self.api_key = api_key
        self.model = model

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post_once(self, payload: Dict[str, Any], timeout: int) -> Dict[str, Any]:
        try:
            response = requests.post(
                self.API_URL, json=payload, headers=self._headers(), timeout=timeout
            )
        except requests.exceptions.Timeout as exc:
            logger.error("%s-Request timed out (model=%s)", self.LABEL, self.model)
            raise AIClientError(AIErrorKind.TIMEOUT, str(exc)) from exc
        except requests.exceptions.ConnectionError as exc:
            logger.error("%s Connection failed (model=%s)", self.LABEL, self.model)
            raise AIClientError(AIErrorKind.CONNECTION, str(exc)) from exc
        except requests.exceptions.RequestException as exc:
            raise AIClientError(AIErrorKind.CONNECTION, type(exc).__name__) from exc

        if response.status_code == 429:
            logger.warning("%s Rate Limit (429) - model=%s", self.LABEL, self.model)
            raise AIClientError(AIErrorKind.RATE_LIMIT, "429 Too Many Requests")

        if response.status_code >= 400:
            if response.status_code == 401:
                logger.error("%s Authentication failed (invalid API key)", self.LABEL)
            else:
                logger.error(
                    "%s HTTP Error (model=%s): %d - %s",
                    self.LABEL,
                    self.model,
                    response.status_code,
                    _safe_response_text(response),
                )
            raise AIClientError(AIErrorKind.HTTP, f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise AIClientError(AIErrorKind.INVALID_RESPONSE, "Antwort ist kein JSON") from exc

    def _post(self, payload: Dict[str, Any], timeout: Optional[int]) -> Dict[str, Any]:
        return self.transport_retry.run(self._post_once, payload, timeout or _default_timeout())

    @staticmethod
    def _first_message(data: Dict[str, Any]) -> Dict[str, Any]:
        choices = data.get("choices") or []
        if not choices:
            raise AIClientError(AIErrorKind.INVALID_RESPONSE, "Antwort ohne choices")
        return choices[0].get("message") or {}

    def complete_with_functions(
        self,
        system: str,
        messages: List[Dict[str, str]],
        functions: List[FunctionDefinition],
        timeout: Optional[int] = None,
        force_function: Optional[str] = None,
    ) -> Optional[FunctionCallResult]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "tools": [f.to_tool() for f in functions],
            "temperature": 0,
        }
        if force_function:
            payload["tool_choice"] = {"type": "function", "function": {"name": force_function}}
        else:
            payload["tool_choice"] = "auto"

        message = self._first_message(self._post(payload, timeout))
        tool_calls = message.get("tool_calls") or []
        if not tool_calls:
            logger.info("%s: kein Function-Call in der Antwort (model=%s)", self.LABEL, self.model)
            return None

        call = tool_calls[0].get("function") or {}
        return self._resolve_function(functions, call.get("name", ""), call.get("arguments"))

    def complete_structured(
        self,
        system: str,
        prompt: str,
        schema: Type[BaseModel],
        timeout: Optional[int] = None,
    ) -> BaseModel:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": schema.__name__,
                    "schema": schema.model_json_schema(),
                },
            },
            "temperature": 0,
        }
        message = self._first_message(self._post(payload, timeout))
        content = (message.get("content") or "").strip()
        try:
            return schema.model_validate_json(content)
        except ValidationError as exc:
            raise AIClientError(
                AIErrorKind.INVALID_ARGUMENTS, f"Antwort passt nicht zu {schema.__name__}"
            ) from exc


class OpenAIClient(OpenAICompatibleClient):
    """OpenAI Chat Completions API."""

    API_URL = "https://api.openai.com/v1/chat/completions"
    LABEL = "OpenAI"


class MistralClient(OpenAICompatibleClient):
    """Mistral Chat Completions API (OpenAI-kompatibles tools-Format)."""

    API_URL = "https://api.mistral.ai/v1/chat/completions"
    LABEL = "Mistral"


class LocalOllamaClient(AIClient):
    """Ollama /api/chat mit tools (lokal, kein API-Key)."""

    DEFAULT_MODEL = "llama3.1:8b"
    DEFAULT_BASE_URL = "http://127.0.0.1:11434"

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None):
        self.model = model or os.getenv("OLLAMA_MODEL", self.DEFAULT_MODEL)
        self.base_url = (base_url or os.getenv("OLLAMA_BASE_URL", self.DEFAULT_BASE_URL)).rstrip("/")

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/chat"

    def _post_once(self, payload: Dict[str, Any], timeout: int) -> Dict[str, Any]:
        try:
            response = requests.post(self.chat_url, json=payload, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as exc:
            logger.error("Ollama-Request timed out (model=%s)", self.model)
            raise AIClientError(AIErrorKind.TIMEOUT, str(exc)) from exc
        except requests.exceptions.ConnectionError as exc:
            logger.error("Ollama nicht erreichbar (%s)", self.base_url)
            raise AIClientError(AIErrorKind.CONNECTION, str(exc)) from exc
        except requests.exceptions.HTTPError as exc:
            logger.error("Ollama HTTP Error: %s", _safe_response_text(exc.response))
            raise AIClientError(AIErrorKind.HTTP, str(exc)) from exc
        try:
            return response.json()
        except ValueError as exc:
            raise AIClientError(AIErrorKind.INVALID_RESPONSE, "Antwort ist kein JSON") from exc

    def _post(self, payload: Dict[str, Any], timeout: Optional[int]) -> Dict[str, Any]:
        return self.transport_retry.run(self._post_once, payload, timeout or _default_timeout())

    def complete_with_functions(
        self,
        system: str,
        messages: List[Dict[str, str]],
        functions: List[FunctionDefinition],
        timeout: Optional[int] = None,
        force_function: Optional[str] = None,
    ) -> Optional[FunctionCallResult]:
        offered = functions
        if force_function:
            # Ollama kennt kein tool_choice - nur die erzwungene Funktion anbieten
            offered = [f for f in functions if f.name == force_function]
        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "tools": [f.to_tool() for f in offered],
            "stream": False,
            "options": {"temperature": 0},
        }
        message = self._post(payload, timeout).get("message") or {}
        tool_calls = message.get("tool_calls") or []
        if not tool_calls:
            logger.info("Ollama: kein Function-Call in der Antwort (model=%s)", self.model)
            return None
        call = tool_calls[0].get("function") or {}
        return self._resolve_function(functions, call.get("name", ""), call.get("arguments"))

    def complete_structured(
        self,
        system: str,
        prompt: str,
        schema: Type[BaseModel],
        timeout: Optional[int] = None,
    ) -> BaseModel:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "format": schema.model_json_schema(),
            "stream": False,
            "options": {"temperature": 0},
        }
        content = ((self._post(payload, timeout).get("message") or {}).get("content") or "").strip()
        try:
            return schema.model_validate_json(content)
        except ValidationError as exc:
            raise AIClientError(
                AIErrorKind.INVALID_ARGUMENTS, f"Antwort passt nicht zu {schema.__name__}"
            ) from exc


PROVIDER_REGISTRY: Dict[str, Dict[str, Any]] = {
    "ollama": {
        "label": "Ollama (lokal)",
        "requires_api_key": False,
        "env_key": None,
        "model_env": "OLLAMA_MODEL",
        "default_model": LocalOllamaClient.DEFAULT_MODEL,
    },
    "openai": {
        "label": "OpenAI",
        "requires_api_key": True,
        "env_key": "OPENAI_API_KEY",
        "model_env": "OPENAI_MODEL",
        "default_model": "gpt-4o-mini",
    },
    "mistral": {
        "label": "Mistral",
        "requires_api_key": True,
        "env_key": "MISTRAL_API_KEY",
        "model_env": "MISTRAL_MODEL",
        "default_model": "mistral-small-latest",
    },
}


def resolve_model(provider: str, requested_model: Optional[str]) -> str:
    """Angefordertes Modell > Environment > Provider-Default"""
    config = PROVIDER_REGISTRY.get((provider or "ollama").lower()) or PROVIDER_REGISTRY["ollama"]
    if requested_model and requested_model.strip():
        return requested_model.strip()
    return os.getenv(config["model_env"], "") or config["default_model"]


def build_client(provider: Optional[str] = None, model: Optional[str] = None, **kwargs) -> AIClient:
    provider_key = (provider or os.getenv("AI_BACKEND", "ollama")).lower()
    if provider_key not in PROVIDER_REGISTRY:
        raise ValueError(f"Unbekanntes Backend: {provider_key}")

    resolved_model = resolve_model(provider_key, model)

    if provider_key == "ollama":
        return LocalOllamaClient(model=resolved_model, base_url=kwargs.get("base_url"))

    env_key = PROVIDER_REGISTRY[provider_key]["env_key"]
    api_key = kwargs.get("api_key") or os.getenv(env_key, "")
    if not api_key:
        raise RuntimeError(f"{env_key} ist nicht gesetzt")

    if provider_key == "openai":
        return OpenAIClient(api_key=api_key, model=resolved_model)
    return MistralClient(api_key=api_key, model=resolved_model)


def get_ai_client(backend: Optional[str] = None, **kwargs) -> AIClient:
    model = kwargs.pop("model", None)
    return build_client(backend, model=model, **kwargs)
