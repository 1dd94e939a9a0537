"""
kvchat :: API Server (aiohttp)

OpenAI-style chat endpoint over a single conversation stream.
messages → template → tokenize → decoding engine → detokenize → text

One engine means one reply at a time: concurrent requests queue on the
AsyncDecodingEngine lock and are answered in arrival order.

Endpoints:
    POST /v1/chat/completions  → chat completion (sync + SSE streaming)
    POST /v1/abort             → stop the reply in progress
    POST /v1/reset             → drop attached context
    POST /v1/context           → attach document text to following queries
    GET  /health               → health check + engine stats

INL - 2025
"""

import json
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from aiohttp import web

from kvchat.core.errors import ConfigurationError, ExecutionError, NumericalError
from kvchat.core.logging import get_logger
from kvchat.engine.decoder import AsyncDecodingEngine
from kvchat.engine.session import ChatSession

logger = get_logger("kvchat.server")


def _error(message: str, kind: str, status: int) -> web.Response:
    return web.json_response({"error": {"message": message, "type": kind}}, status=status)


@dataclass
class ChatRequest:
    messages: List[Dict[str, str]]
    max_tokens: Optional[int] = None
    stream: bool = False
    timeout_s: Optional[float] = None

    def validate(self) -> Optional[str]:
        """Validate request parameters. Returns error message or None."""
        if not isinstance(self.messages, list) or not self.messages:
            return "messages must be a non-empty list"
        for m in self.messages:
            if not isinstance(m, dict) or "content" not in m or "role" not in m:
                return "each message needs 'role' and 'content'"
            if m["role"] not in ("system", "user", "assistant"):
                return f"unknown role: {m['role']}"
        if self.max_tokens is not None and (not isinstance(self.max_tokens, int) or self.max_tokens < 1):
            return "max_tokens must be an integer >= 1"
        if self.timeout_s is not None and (not isinstance(self.timeout_s, (int, float)) or self.timeout_s <= 0):
            return "timeout_s must be > 0"
        return None


class ChatServer:
    """aiohttp front-end for a ChatSession."""

    def __init__(
        self,
        session: ChatSession,
        host: str = "127.0.0.1",
        port: int = 8000,
    ):
        self.session = session
        self.async_engine = AsyncDecodingEngine(session.engine)
        self.host = host
        self.port = port
        self.request_counter: int = 0
        self._start_time = time.monotonic()

    def _completion_id(self) -> str:
        self.request_counter += 1
        return f"chatcmpl-{self.request_counter}"

    async def _parse(self, request: web.Request):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return None, _error("Invalid JSON in request body", "invalid_request_error", 400)
        if not isinstance(body, dict):
            return None, _error("Request body must be a JSON object", "invalid_request_error", 400)
        return body, None

    async def handle_chat_completions(self, request: web.Request) -> web.StreamResponse:
        """POST /v1/chat/completions"""
        body, err = await self._parse(request)
        if err is not None:
            return err

        req = ChatRequest(
            messages=body.get("messages"),
            max_tokens=body.get("max_tokens"),
            stream=bool(body.get("stream", False)),
            timeout_s=body.get("timeout_s"),
        )
        error = req.validate()
        if error:
            return _error(error, "invalid_request_error", 400)

        prompt_ids = self.session.encode_messages(req.messages)
        budget = len(prompt_ids) + req.max_tokens if req.max_tokens else None
        completion_id = self._completion_id()

        if req.stream:
            return await self._stream(request, completion_id, prompt_ids, budget, req.timeout_s)

        try:
            output = await self.async_engine.generate(prompt_ids, max_tokens=budget, timeout_s=req.timeout_s)
        except (ExecutionError, NumericalError, ConfigurationError) as e:
            logger.error(f"Chat completion error: {e}", exc_info=True)
            return _error(str(e), "server_error", 500)

        stats = self.session.engine.last_stats
        text = self.session.decode_reply(output, len(prompt_ids))
        return web.json_response({
            "id": completion_id,
            "object": "chat.completion",
            "created": int(time.time()),
            "model": self.session.model_name,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": stats.finish_reason,
            }],
            "usage": {
                "prompt_tokens": len(prompt_ids),
                "completion_tokens": len(output) - len(prompt_ids),
                "total_tokens": len(output),
            },
            "timing": {
                "first_token_ms": stats.first_token_ms,
                "elapsed_ms": round(stats.elapsed_ms, 2),
                "tokens_per_sec": round(stats.tokens_per_sec, 2),
            },
        })

    async def _stream(self, request, completion_id, prompt_ids, budget, timeout_s) -> web.StreamResponse:
        """SSE stream of text deltas. Text is re-decoded from all generated ids
        so multi-token characters come out whole."""
        response = web.StreamResponse()
        response.content_type = "text/event-stream"
        await response.prepare(request)

        def _chunk(delta: Dict, finish_reason: Optional[str] = None) -> bytes:
            payload = {
                "id": completion_id,
                "object": "chat.completion.chunk",
                "model": self.session.model_name,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }
            return f"data: {json.dumps(payload)}\n\n".encode()

        generated: List[int] = []
        sent = ""
        try:
            await response.write(_chunk({"role": "assistant"}))
            async for token_id in self.async_engine.generate_stream(prompt_ids, max_tokens=budget, timeout_s=timeout_s):
                generated.append(token_id)
                text = self.session.decode_reply(generated, 0)
                if len(text) > len(sent) and text.startswith(sent):
                    await response.write(_chunk({"content": text[len(sent):]}))
                    sent = text
            await response.write(_chunk({}, self.session.engine.last_stats.finish_reason))
            await response.write(b"data: [DONE]\n\n")
        except (ConnectionResetError, ConnectionError):
            logger.info(f"{completion_id}: client disconnected")
        except (ExecutionError, NumericalError, ConfigurationError) as e:
            logger.error(f"Chat stream error: {e}", exc_info=True)
            error = {"error": {"message": str(e), "type": "server_error"}}
            await response.write(f"data: {json.dumps(error)}\n\n".encode())
        return response

    async def handle_abort(self, request: web.Request) -> web.Response:
        """POST /v1/abort"""
        return web.json_response({"aborted": self.async_engine.abort()})

    async def handle_reset(self, request: web.Request) -> web.Response:
        """POST /v1/reset"""
        self.session.clear_context()
        return web.json_response({"reset": True})

    async def handle_context(self, request: web.Request) -> web.Response:
        """POST /v1/context  {"text": "..."}"""
        body, err = await self._parse(request)
        if err is not None:
            return err
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            return _error("text must be a non-empty string", "invalid_request_error", 400)
        self.session.attach_context(text)
        return web.json_response({"context_chars": len(text.strip())})

    async def handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        return web.json_response({
            "status": "ok",
            "model": self.session.model_name,
            "uptime_seconds": int(time.monotonic() - self._start_time),
            "requests_served": self.request_counter,
            "has_context": self.session.has_context,
            "engine": self.async_engine.get_stats(),
            "model_info": self.session.model_info,
        })

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1/chat/completions", self.handle_chat_completions)
        app.router.add_post("/v1/abort", self.handle_abort)
        app.router.add_post("/v1/reset", self.handle_reset)
        app.router.add_post("/v1/context", self.handle_context)
        app.router.add_get("/health", self.handle_health)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_cleanup(self, app):
        self.async_engine.abort()
        self.session.close()
        logger.info("Server cleanup complete")

    def run(self):
        logger.info(f"kvchat :: {self.session.model_name}")
        logger.info(f"  http://{self.host}:{self.port}")
        logger.info("  POST /v1/chat/completions | POST /v1/abort | POST /v1/context | GET /health")
        web.run_app(self.create_app(), host=self.host, port=self.port, print=None)
