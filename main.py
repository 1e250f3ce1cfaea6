import asyncio
import json
import logging
import os
import secrets
import socket
import sys
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI, WebSocket
from starlette.websockets import WebSocketDisconnect

from interviewer.audio import AudioPipeline
from interviewer.bridge import Participant, TransportBridge
from interviewer.config import (
    effective_api_routes,
    get_data_dir,
    load_config,
    resolve_api_key_for_provider,
)
from interviewer.llm import LLMClient
from interviewer.logging_utils import apply_runtime_log_levels, log_important
from interviewer.persistence import ArtifactStore, AuditLog, CaseStore, DocumentStore, TranscriptStore
from interviewer.sessions import SessionKind, SessionRegistry
from interviewer.transcription import create_transcriber

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Main")

config: dict = {}
llm_client: LLMClient | None = None
registry: SessionRegistry | None = None
bridge: TransportBridge | None = None


def init_llm_client_from_config(cfg: dict) -> LLMClient | None:
    routes = effective_api_routes(cfg)
    if not routes:
        log_important(
            "llm.unconfigured",
            level=logging.WARNING,
            dedupe_key="no-api-key",
            dedupe_window_s=30.0,
            provider=cfg.get("api_provider"),
        )
        return None

    fallback_enabled = bool(cfg.get("api_fallback_enabled", True))
    if not fallback_enabled:
        routes = routes[:1]

    first = routes[0]
    client = LLMClient(
        api_key=str(first.get("api_key") or ""),
        base_url=str(first.get("base_url") or ""),
        model=str(first.get("model") or ""),
        default_headers=first.get("api_extra_headers") or {},
        fallback_routes=routes[1:],
        failover_enabled=fallback_enabled,
    )
    log_important(
        "llm.configured",
        provider=first.get("provider"),
        model=first.get("model"),
        base_url=first.get("base_url"),
        fallback_enabled=fallback_enabled,
        routes=len(routes),
    )
    return client


def _openai_api_key(cfg: dict) -> str:
    for route in effective_api_routes(cfg):
        if route.get("provider") == "openai":
            return str(route.get("api_key") or "")
    return resolve_api_key_for_provider("openai", "")


def build_bridge(cfg: dict) -> TransportBridge:
    global llm_client, registry

    data_dir = get_data_dir(cfg)
    llm_client = init_llm_client_from_config(cfg)
    registry = SessionRegistry(
        intake_ttl_s=cfg["intake_session_ttl_seconds"],
        intake_sessions_per_ip=cfg["intake_sessions_per_ip"],
        intake_rate_window_s=cfg["intake_rate_window_seconds"],
    )
    transcriber = create_transcriber(cfg, openai_api_key=_openai_api_key(cfg))
    pipeline = AudioPipeline(
        transcriber,
        ArtifactStore(data_dir),
        language=cfg["transcription_language"],
        archive_timeout_s=cfg["audio_archive_timeout_seconds"],
    )
    log_important(
        "transcription.backend",
        backend=cfg.get("transcription_backend"),
        available=pipeline.transcription_available,
    )
    return TransportBridge(
        registry,
        llm=llm_client,
        audio=pipeline,
        transcripts=TranscriptStore(data_dir),
        documents=DocumentStore(data_dir),
        cases=CaseStore(data_dir),
        audit=AuditLog(data_dir / "agent_events.jsonl"),
        config=cfg,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global config, bridge
    # Startup
    logger.info("Server starting...")
    log_important("server.starting")
    config = load_config()
    apply_runtime_log_levels(config)
    bridge = build_bridge(config)
    sweeper = asyncio.create_task(registry.run_sweeper(config["session_sweep_interval_seconds"]))
    yield
    # Shutdown
    logger.info("Shutting down...")
    log_important("server.stopping", sessions=len(registry))
    try:
        # Let running turns and archive flushes finish their writes.
        await asyncio.wait_for(bridge.drain(), timeout=15.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown drain timed out; abandoning in-flight turns")
    sweeper.cancel()
    with suppress(BaseException):
        await sweeper


app = FastAPI(lifespan=lifespan)


# ============================================
# HTTP ROUTES
# ============================================

@app.get("/health")
def health():
    counts = registry.counts() if registry is not None else {}
    return {"status": "ok", "sessions": counts}


# ============================================
# WEBSOCKETS
# ============================================

def _client_ip(websocket: WebSocket) -> str:
    forwarded = websocket.headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    client = websocket.client
    return client.host if client is not None and client.host else "unknown"


async def _serve(websocket: WebSocket, participant: Participant) -> None:
    log_important("ws.connected", kind=participant.kind.value, participant=participant.id)
    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code") or 1000)

            data = message.get("bytes")
            if data is not None:
                await bridge.handle_audio_chunk(participant, data)
                continue

            text = message.get("text")
            if text is None:
                continue
            try:
                msg = json.loads(text)
            except json.JSONDecodeError:
                await participant.send({"type": "error", "message": "Invalid JSON", "code": "invalid_json"})
                continue
            if not isinstance(msg, dict):
                await participant.send({"type": "error", "message": "Expected a JSON object", "code": "invalid_json"})
                continue
            await bridge.handle_event(participant, msg)
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket disconnected (code={getattr(e, 'code', None)})")
        log_important("ws.disconnected", kind=participant.kind.value, code=getattr(e, "code", None))
    except Exception:
        logger.exception("WebSocket crashed")
        log_important("ws.crashed", level=logging.ERROR, kind=participant.kind.value)
    finally:
        await bridge.handle_disconnect(participant)


@app.websocket("/ws/interview")
async def interview_endpoint(websocket: WebSocket):
    expected = str(config.get("interview_access_token") or "")
    if expected:
        provided = websocket.query_params.get("token") or ""
        if not secrets.compare_digest(provided.encode(), expected.encode()):
            log_important("ws.rejected", level=logging.WARNING, kind="interview", reason="bad-token")
            await websocket.close(code=4401)
            return
    await websocket.accept()
    participant = Participant(websocket, kind=SessionKind.INTERVIEW, client_ip=_client_ip(websocket))
    await _serve(websocket, participant)


@app.websocket("/ws/intake")
async def intake_endpoint(websocket: WebSocket):
    await websocket.accept()
    participant = Participant(websocket, kind=SessionKind.INTAKE, client_ip=_client_ip(websocket))
    await _serve(websocket, participant)


def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    try:
        server_host = os.environ.get("INTERVIEWER_HOST", "127.0.0.1")
        preferred_port = int(os.environ.get("INTERVIEWER_PORT", "8000"))
        server_port = find_available_port(server_host, preferred_port)
        logger.info(f"Starting server on http://{server_host}:{server_port}")
        start_server(server_host, server_port)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    except Exception:
        logger.exception("Fatal error during startup:")
        sys.exit(1)
