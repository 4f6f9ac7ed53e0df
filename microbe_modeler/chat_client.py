"""HTTP client used by the dashboard to talk to the chat relay."""

import logging
import os
import uuid
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_CHAT_URL = "http://localhost:4000"
DEFAULT_TIMEOUT_SECONDS = 30.0
FALLBACK_REPLY = (
    "Sorry, I couldn't reach the AI assistant right now. Make sure the chat relay "
    "is running at {url} and try again."
)


class NetworkError(Exception):
    """Raised when the relay cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def new_session_id() -> str:
    return uuid.uuid4().hex


class ChatClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("MICROBE_CHAT_URL", DEFAULT_CHAT_URL)).rstrip("/")
        self.session_id = session_id or new_session_id()
        if timeout is None:
            try:
                timeout = float(os.getenv("MICROBE_CHAT_TIMEOUT", str(DEFAULT_TIMEOUT_SECONDS)))
            except ValueError:
                timeout = DEFAULT_TIMEOUT_SECONDS
        self.timeout = timeout

    def ask(
        self,
        text: str,
        data: Optional[List[Dict[str, Any]]] = None,
        fit_result: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Send one user message and return the assistant's reply.

        Raises:
            NetworkError: transport failure, non-2xx status or a malformed body.
        """
        payload: Dict[str, Any] = {"text": text, "sessionId": self.session_id}
        if data:
            payload["data"] = data
        if fit_result:
            payload["fitResult"] = fit_result

        url = f"{self.base_url}/api/messages"
        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Could not reach chat relay at {url}: {e}") from e

        if not resp.ok:
            try:
                body = resp.json()
            except ValueError:
                body = None
            detail = body.get("error", resp.text) if isinstance(body, dict) else resp.text
            raise NetworkError(
                f"Chat relay returned HTTP {resp.status_code}: {detail}",
                status_code=resp.status_code,
            )
        try:
            return str(resp.json()["text"])
        except (ValueError, KeyError, TypeError) as e:
            raise NetworkError(f"Malformed reply from chat relay: {e}") from e

    def ask_with_fallback(
        self,
        text: str,
        data: Optional[List[Dict[str, Any]]] = None,
        fit_result: Optional[Dict[str, Any]] = None,
    ) -> str:
        """ask(), but a NetworkError becomes an inline assistant message."""
        try:
            return self.ask(text, data, fit_result)
        except NetworkError as e:
            logger.warning(f"Chat request failed: {e}")
            return FALLBACK_REPLY.format(url=self.base_url)

    def health(self) -> Dict[str, Any]:
        try:
            resp = requests.get(f"{self.base_url}/api/health", timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            raise NetworkError(f"Chat relay health check failed: {e}") from e
