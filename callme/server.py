"""HTTP/WebSocket servers for CallMe.

Two FastAPI applications share one CallRegistry:

* the control app (loopback only) exposes the agent-facing operations
  ``initiate_call``, ``continue_call``, ``speak_to_user``, ``end_call`` and
  the default destination number;
* the carrier app (public) receives the carrier's answer and status webhooks
  and the media-stream WebSocket.

Both are served by uvicorn on the same event loop.
"""

from __future__ import annotations

import asyncio

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel

from callme import __version__
from callme.config import CallMeConfig, load_config
from callme.errors import CallMeError, WebhookAuthError
from callme.providers.registry import build_providers
from callme.registry import CallRegistry
from callme.transports.websocket import FastAPIWebSocketTransport


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class InitiateCallRequest(BaseModel):
    message: str


class CallMessageRequest(BaseModel):
    call_id: str
    message: str


class EndCallRequest(BaseModel):
    call_id: str
    message: str = ""


class SetUserNumberRequest(BaseModel):
    phone_number: str


# ---------------------------------------------------------------------------
# Control API
# ---------------------------------------------------------------------------


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CallMeError)
    async def callme_error(request: Request, exc: CallMeError) -> JSONResponse:
        logger.warning(f"{request.url.path} failed: {exc.code}: {exc.message}")
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse({"error": str(exc), "code": "invalid_request"}, status_code=400)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        )
        return JSONResponse({"error": problems, "code": "invalid_request"}, status_code=400)


def create_control_app(registry: CallRegistry) -> FastAPI:
    """Create the local control API for one registry."""
    app = FastAPI(
        title="CallMe control API",
        description="Let an agent place and hold phone calls",
        version=__version__,
    )
    _install_error_handlers(app)

    @app.post("/initiate_call")
    async def initiate_call(body: InitiateCallRequest):
        result = await registry.initiate_call(body.message)
        return JSONResponse({"callId": result.call_id, "response": result.response})

    @app.post("/continue_call")
    async def continue_call(body: CallMessageRequest):
        response = await registry.continue_call(body.call_id, body.message)
        return JSONResponse({"response": response})

    @app.post("/speak_to_user")
    async def speak_to_user(body: CallMessageRequest):
        await registry.speak_only(body.call_id, body.message)
        return JSONResponse({"success": True})

    @app.post("/end_call")
    async def end_call(body: EndCallRequest):
        duration = await registry.end_call(body.call_id, body.message)
        return JSONResponse({"durationSeconds": duration})

    @app.post("/set_user_number")
    async def set_user_number(body: SetUserNumberRequest):
        number = registry.set_user_phone_number(body.phone_number)
        return JSONResponse({"success": True, "phone_number": number})

    @app.post("/get_user_number")
    async def get_user_number():
        return JSONResponse({"phone_number": registry.get_user_phone_number()})

    @app.get("/health")
    async def health():
        return JSONResponse({
            "status": "ok",
            "publicUrl": registry.config.server.public_url,
            "activeCalls": registry.active_count,
        })

    @app.get("/status")
    async def status():
        return JSONResponse(registry.status())

    return app


# ---------------------------------------------------------------------------
# Carrier-facing app
# ---------------------------------------------------------------------------


def create_carrier_app(registry: CallRegistry) -> FastAPI:
    """Create the public app that the carrier calls back."""
    phone = registry.providers.phone
    public_url = registry.config.server.public_url

    app = FastAPI(title="CallMe carrier webhooks", version=__version__)
    _install_error_handlers(app)

    async def verified_body(request: Request) -> bytes:
        body = await request.body()
        url = f"{public_url}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        if not phone.verify_webhook(url, request.headers, body):
            logger.warning(f"Rejected unsigned webhook {request.url.path} from {request.client}")
            raise WebhookAuthError("Invalid webhook signature")
        return body

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "activeCalls": registry.active_count})

    @app.post("/twiml")
    async def answer_webhook(request: Request):
        body = await verified_body(request)
        call_id = request.query_params.get("call_id")
        event = phone.parse_webhook(body, request.headers.get("content-type", ""))

        session = registry.resolve_session(call_id, event.carrier_call_id if event else "")
        if event is not None:
            await registry.handle_carrier_event(call_id, event)

        if session is None or session.is_terminal:
            logger.info(f"Answer webhook for {call_id or 'unknown call'}: rejecting")
            reply = phone.reject_response()
        else:
            reply = phone.answer_response(registry.stream_url(session.call_id))
        return Response(content=reply.body, media_type=reply.media_type, headers=reply.headers)

    @app.post("/status")
    async def status_webhook(request: Request):
        body = await verified_body(request)
        event = phone.parse_webhook(body, request.headers.get("content-type", ""))
        if event is not None:
            await registry.handle_carrier_event(request.query_params.get("call_id"), event)
        return Response(status_code=204)

    @app.websocket("/media-stream/{call_id}")
    async def media_stream(websocket: WebSocket, call_id: str):
        await websocket.accept()
        logger.info(f"[{call_id}] Media WebSocket connected: {websocket.client}")
        transport = FastAPIWebSocketTransport(websocket)
        try:
            await registry.attach_media(call_id, transport)
        except CallMeError as e:
            logger.warning(f"[{call_id}] Refusing media stream: {e}")
        finally:
            await transport.disconnect()
        logger.info(f"[{call_id}] Media WebSocket closed")

    return app


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


async def serve(config: CallMeConfig, registry: CallRegistry | None = None) -> None:
    """Serve both apps until interrupted, then hang up every call."""
    if registry is None:
        registry = CallRegistry(config, build_providers(config))

    server_cfg = config.server
    log_level = config.logging.level.lower()
    control = uvicorn.Server(uvicorn.Config(
        create_control_app(registry),
        host=server_cfg.control_host,
        port=server_cfg.control_port,
        log_level=log_level,
    ))
    carrier = uvicorn.Server(uvicorn.Config(
        create_carrier_app(registry),
        host=server_cfg.host,
        port=server_cfg.port,
        log_level=log_level,
    ))

    logger.info(f"Control API on http://{server_cfg.control_host}:{server_cfg.control_port}")
    logger.info(f"Carrier webhooks on {server_cfg.host}:{server_cfg.port} ({server_cfg.public_url})")
    try:
        await asyncio.gather(control.serve(), carrier.serve())
    finally:
        await registry.shutdown()


def run_server(config: CallMeConfig | dict | str | None = None) -> None:
    """Run the CallMe servers with uvicorn.

    Args:
        config: Configuration (YAML path, dict, CallMeConfig, or None for env).
    """
    asyncio.run(serve(load_config(config)))
