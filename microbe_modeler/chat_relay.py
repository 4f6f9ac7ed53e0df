"""FastAPI chat relay between the dashboard and Google Gemini."""

import json
import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Protocol

import google.generativeai as genai
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-1.5-flash"
DATA_SAMPLE_ROWS = 10
SYSTEM_INSTRUCTION = (
    "You are a helpful AI data assistant. Your primary role is to analyze the provided "
    "microbial survival dataset and model fitting results. Keep responses concise and "
    "insightful. Use the data and fit results provided in the prompt to answer the "
    "user's question."
)
EMPTY_REPLY = (
    "I couldn't generate a response right now. Please check the server logs."
)

Message = Dict[str, Any]


class ChatBackendError(Exception):
    """Raised when the language-model backend fails to produce a reply."""

    pass


class ChatBackend(Protocol):
    model_name: str

    def generate(self, history: List[Message]) -> str: ...


class GeminiBackend:
    """google-generativeai wrapper; the model is created on first use."""

    def __init__(
        self, api_key: Optional[str] = None, model_name: Optional[str] = None
    ) -> None:
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        self.model_name = model_name or os.environ.get("GEMINI_MODEL", DEFAULT_MODEL)
        self._model = None
        if not self.api_key:
            logger.error("GEMINI_API_KEY is not set in environment variables")

    def _get_model(self):
        if self._model is None:
            if not self.api_key:
                raise ChatBackendError("GEMINI_API_KEY is not configured")
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(
                self.model_name, system_instruction=SYSTEM_INSTRUCTION
            )
        return self._model

    def generate(self, history: List[Message]) -> str:
        try:
            resp = self._get_model().generate_content(history)
        except ChatBackendError:
            raise
        except Exception as e:
            raise ChatBackendError(f"Gemini API Error: {e}") from e

        if resp.candidates:
            candidate = resp.candidates[0]
            content = getattr(candidate, "content", None)
            if content is not None and getattr(content, "parts", None):
                text = content.parts[0].text
                if text:
                    return text
        return EMPTY_REPLY


class SessionStore:
    """
    Per-session conversation history held in memory.

    Bounded to `max_sessions` (least recently used evicted first); a session idle
    for longer than `ttl_seconds` is dropped the next time the store is touched.
    """

    def __init__(
        self,
        max_sessions: int = 256,
        ttl_seconds: float = 3600.0,
        clock=time.monotonic,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        self.max_sessions = max_sessions
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: "OrderedDict[str, tuple[float, List[Message]]]" = OrderedDict()

    def _purge_expired(self, now: float) -> None:
        expired = [
            sid
            for sid, (touched, _) in self._sessions.items()
            if now - touched > self.ttl_seconds
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.debug(f"Expired {len(expired)} chat session(s)")

    def get(self, session_id: str) -> List[Message]:
        """Copy of the session's history (empty for unknown or expired sessions)."""
        with self._lock:
            self._purge_expired(self._clock())
            entry = self._sessions.get(session_id)
            return list(entry[1]) if entry else []

    def save(self, session_id: str, history: List[Message]) -> None:
        with self._lock:
            now = self._clock()
            self._purge_expired(now)
            self._sessions[session_id] = (now, list(history))
            self._sessions.move_to_end(session_id)
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.debug(f"Evicted chat session {evicted}")

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            self._purge_expired(self._clock())
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._sessions)


class MessageRequest(BaseModel):
    text: Optional[str] = None
    sessionId: Optional[str] = None
    data: Optional[List[Dict[str, Any]]] = None
    fitResult: Optional[Dict[str, Any]] = None


def build_prompt(
    text: str,
    data: Optional[List[Dict[str, Any]]] = None,
    fit_result: Optional[Dict[str, Any]] = None,
) -> str:
    """User text, prefixed with a data sample and then the fit results when given."""
    message = text
    if data:
        sample = json.dumps(data[:DATA_SAMPLE_ROWS], indent=2)
        message = (
            f"Here is a sample of the dataset (first {DATA_SAMPLE_ROWS} rows):\n"
            f"{sample}\n\nUser question: {message}"
        )
    if fit_result:
        message = (
            f"Here are the model fitting results:\n{json.dumps(fit_result, indent=2)}"
            f"\n\n{message}"
        )
    return message


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}; using {default}")
        return default


def create_app(
    backend: Optional[ChatBackend] = None, store: Optional[SessionStore] = None
) -> FastAPI:
    """Build the relay application around a backend and a session store."""
    backend = backend or GeminiBackend()
    store = store or SessionStore(
        max_sessions=_env_int("MICROBE_SESSION_MAX", 256),
        ttl_seconds=_env_int("MICROBE_SESSION_TTL_SECONDS", 3600),
    )

    app = FastAPI(
        title="Microbe Modeler Chat Relay",
        description="Relays dashboard questions about data and fits to Gemini",
        version="0.1.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.state.backend = backend
    app.state.sessions = store

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "model": backend.model_name}

    @app.post("/api/messages")
    def post_message(req: MessageRequest):
        if not req.text or not req.sessionId:
            return JSONResponse(
                status_code=400,
                content={"error": "Missing text or sessionId in body."},
            )

        history = store.get(req.sessionId)
        history.append(
            {"role": "user", "parts": [build_prompt(req.text, req.data, req.fitResult)]}
        )
        try:
            reply = backend.generate(history)
        except ChatBackendError as e:
            logger.error(f"Error processing message: {e}")
            return JSONResponse(status_code=502, content={"error": str(e)})

        history.append({"role": "model", "parts": [reply]})
        store.save(req.sessionId, history)
        return {"text": reply}

    return app


app = create_app()


def main() -> None:
    """Run the relay server."""
    uvicorn.run(
        "microbe_modeler.chat_relay:app",
        host="0.0.0.0",
        port=_env_int("PORT", 4000),
    )


if __name__ == "__main__":
    main()
