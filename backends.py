import logging
import os
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import requests
from openai import APIConnectionError, APIStatusError, OpenAI, OpenAIError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "30"))

ROLE_LABELS = {"user": "User", "assistant": "Assistant", "system": "System"}

# Fixed sampling parameters for the completion endpoint.
COMPLETION_PARAMS = {
    "temperature": 0.9,
    "max_tokens": 150,
    "top_p": 1,
    "frequency_penalty": 0,
    "presence_penalty": 0.6,
    "stop": [" Human:", " AI:"],
}

PREDICTION_PARAMS = {
    "temperature": 0.2,
    "maxOutputTokens": 256,
    "topP": 0.8,
    "topK": 40,
}


class BackendError(Exception):
    """Raised when a backend cannot produce a reply."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def format_context(turns: Sequence[Any]) -> str:
    """Serialize turns as ``Role: text`` blocks separated by blank lines."""
    blocks = []
    for turn in turns:
        role = getattr(turn.sender, "value", turn.sender)
        label = ROLE_LABELS.get(role, str(role))
        blocks.append(f"{label}: {turn.text.strip()}")
    return "\n\n".join(blocks)


def _error_field(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    err = payload.get("error")
    if isinstance(err, dict):
        err = err.get("message")
    if err is None:
        return None
    err = str(err).strip()
    return err or None


class ChatBackend(ABC):
    """Something that turns the latest user message into a reply.

    ``context`` is the conversation as it stood before ``text`` was sent.
    Implementations raise BackendError for transport failures, non-success
    statuses and replies that do not have the expected shape.
    """

    name = "backend"

    @abstractmethod
    def send_message(self, context: Sequence[Any], text: str) -> str:
        pass


class _HTTPBackend(ChatBackend):
    def __init__(self, url: str, http=None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.url = url
        self.http = http or requests.Session()
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _post_json(self, body: dict) -> Any:
        if not self.url:
            raise BackendError(f"No URL configured for the {self.name} backend.")
        logger.debug("%s request: url=%s payload=%s", self.name, self.url, body)
        try:
            resp = self.http.post(self.url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise BackendError(f"Could not reach the {self.name} service: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not 200 <= resp.status_code < 300:
            message = _error_field(data) or f"{self.name.capitalize()} request failed ({resp.status_code})."
            raise BackendError(message, status=resp.status_code)
        if data is None:
            raise BackendError(f"{self.name.capitalize()} service returned a non-JSON response.", status=resp.status_code)
        logger.debug("%s response body: %s", self.name, data)
        return data


class EchoBackend(_HTTPBackend):
    name = "echo"

    def send_message(self, context: Sequence[Any], text: str) -> str:
        data = self._post_json({"message": text})
        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, str):
            raise BackendError("Unexpected echo response format.")
        return message


class PredictionBackend(_HTTPBackend):
    """Cloud chat-prediction endpoint (``instances``/``predictions`` shape)."""

    name = "prediction"

    def __init__(
        self,
        url: str,
        token: str = "",
        http=None,
        timeout: float = DEFAULT_TIMEOUT,
        parameters: Optional[dict] = None,
    ) -> None:
        super().__init__(url, http=http, timeout=timeout)
        self.token = token
        self.parameters = dict(PREDICTION_PARAMS if parameters is None else parameters)

    def _headers(self) -> dict:
        headers = super()._headers()
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def build_request(self, context: Sequence[Any], text: str) -> dict:
        return {
            "instances": [
                {
                    "context": format_context(context),
                    "examples": [],
                    "messages": [{"author": "user", "content": text, "id": str(uuid.uuid4())}],
                }
            ],
            "parameters": self.parameters,
        }

    def send_message(self, context: Sequence[Any], text: str) -> str:
        data = self._post_json(self.build_request(context, text))
        try:
            content = data["predictions"][0]["candidates"][0]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise BackendError("Unexpected prediction response format.") from exc
        if not isinstance(content, str):
            raise BackendError("Unexpected prediction response format.")
        return content


class CompletionBackend(ChatBackend):
    name = "completion"

    def __init__(
        self,
        model: str,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client=None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.model = model
        # The client requires a key string even when the server ignores it.
        self.client = client or OpenAI(base_url=base_url, api_key=api_key or "not-set", timeout=timeout)

    def send_message(self, context: Sequence[Any], text: str) -> str:
        try:
            completion = self.client.completions.create(model=self.model, prompt=text, **COMPLETION_PARAMS)
        except APIStatusError as exc:
            # The SDK usually unwraps the "error" object into ``body`` already.
            body = exc.body if isinstance(exc.body, dict) and "error" in exc.body else {"error": exc.body}
            message = _error_field(body)
            raise BackendError(
                message or f"Completion request failed ({exc.status_code}).", status=exc.status_code
            ) from exc
        except APIConnectionError as exc:
            raise BackendError(f"Could not reach the completion service: {exc}") from exc
        except OpenAIError as exc:
            raise BackendError(f"Completion request failed: {exc}") from exc

        choices = getattr(completion, "choices", None) or []
        choice = choices[0] if choices else None
        reply = getattr(choice, "text", None) if choice is not None else None
        if not isinstance(reply, str):
            raise BackendError("Unexpected completion response format.")
        return reply.strip()


BACKENDS = ("echo", "completion", "prediction")


def create_backend(name: str, **config: Any) -> ChatBackend:
    key = (name or "").strip().lower()
    if key == "echo":
        return EchoBackend(config.get("echo_url", ""), timeout=config.get("timeout", DEFAULT_TIMEOUT))
    if key == "completion":
        return CompletionBackend(
            config.get("model", ""),
            base_url=config.get("base_url"),
            api_key=config.get("api_key"),
            timeout=config.get("timeout", DEFAULT_TIMEOUT),
        )
    if key == "prediction":
        return PredictionBackend(
            config.get("prediction_url", ""),
            token=config.get("prediction_token", ""),
            timeout=config.get("timeout", DEFAULT_TIMEOUT),
        )
    raise ValueError(f"Unknown chat backend {name!r}; expected one of {', '.join(BACKENDS)}")
