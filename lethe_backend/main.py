import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .broadcaster import TelemetryBroadcaster
from .certificates import CertificateGenerator, verify_certificate
from .config import Settings, get_settings
from .enumerator import DeviceEnumerator, system_check
from .errors import AuthError, LetheError, NotFoundError, ValidationError
from .logs import structured_log
from .models import StopRequest, WipeRequest, build_wipe_config
from .registry import SessionRegistry
from .supervisor import Spawner, WipeSupervisor, spawn_process


def create_app(settings: Optional[Settings] = None, spawner: Spawner = spawn_process,
               enumerator: Optional[DeviceEnumerator] = None) -> FastAPI:
    settings = settings or get_settings()
    registry = SessionRegistry()
    broadcaster = TelemetryBroadcaster(settings.observer_queue_size)
    certificates = CertificateGenerator(settings.certs_dir, settings.signing_keys_dir,
                                        sign=settings.sign_certificates)
    supervisor = WipeSupervisor(registry, broadcaster, certificates, settings.logs_dir,
                                lethe_bin=settings.bin, spawner=spawner,
                                stop_grace_seconds=settings.stop_grace_seconds)
    enumerator = enumerator or DeviceEnumerator(settings.bin, timeout=settings.enumerate_timeout,
                                                retries=settings.enumerate_retries)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.ensure_dirs()
        structured_log("server_start", data_dir=settings.data_dir, lethe_bin=settings.bin)
        try:
            yield
        finally:
            # no wipe may outlive the server
            await supervisor.shutdown()
            structured_log("server_stop")

    app = FastAPI(title="Lethe Web API", description="Wipe job orchestration and telemetry relay for the lethe CLI",
                  version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.supervisor = supervisor
    app.state.enumerator = enumerator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LetheError)
    async def _lethe_error(request: Request, exc: LetheError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError):
        return JSONResponse({"success": False, "error": "Malformed request body"}, status_code=400)

    def require_key(request: Request):
        """Optional API key auth. If no key is configured -> open mode."""
        if not settings.api_key:
            return
        supplied = request.headers.get("x-api-key") or request.query_params.get("api_key")
        if supplied != settings.api_key:
            raise AuthError("Invalid or missing API key")

    @app.get("/api/system/check")
    def check(_: None = Depends(require_key)):
        return {"success": True, **system_check(settings.bin)}

    @app.get("/api/devices")
    def list_devices(_: None = Depends(require_key)):
        result = enumerator.list()
        if not result.devices and result.errors:
            return JSONResponse({"success": False, "error": f"Failed to list devices: {result.error}"},
                                status_code=500)
        return {"success": True, "devices": [d.model_dump(mode="json") for d in result.devices],
                "source": result.source}

    @app.post("/api/wipe")
    async def start_wipe(req: WipeRequest, _: None = Depends(require_key)):
        if not req.device or req.config is None:
            raise ValidationError("Device and config are required")
        config = build_wipe_config(req.config, settings.schemes)
        session_id = await supervisor.start(req.device, config)
        return {"success": True, "message": "Wipe operation started", "sessionId": session_id}

    @app.post("/api/wipe/stop")
    async def stop_wipe(req: StopRequest, _: None = Depends(require_key)):
        if not req.device:
            raise ValidationError("Device is required")
        supervisor.stop(req.device)
        return {"success": True, "message": "Wipe operation stopped"}

    @app.get("/api/wipe/status")
    def wipe_status(device: str = Query(...), _: None = Depends(require_key)):
        return {"success": True, "session": supervisor.status(device).to_public()}

    @app.get("/api/sessions")
    def list_sessions(_: None = Depends(require_key)):
        return {"success": True, "sessions": [s.to_public() for s in registry.all()]}

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str, _: None = Depends(require_key)):
        return {"success": True, "session": registry.require(session_id).to_public()}

    def _artifact(session_id: str, attr: str, label: str, media_type: str, ext: str):
        session = registry.require(session_id)
        path = getattr(session, attr)
        if not path or not os.path.exists(path):
            details = {"sessionId": session_id, "state": session.state.value}
            if session.artifact_error:
                details["artifactError"] = session.artifact_error
            raise NotFoundError(f"{label} not found", details=details)
        return FileResponse(path, media_type=media_type, filename=f"{session_id}.{ext}")

    @app.get("/api/sessions/{session_id}/log")
    def session_log(session_id: str, _: None = Depends(require_key)):
        return _artifact(session_id, "log_path", "Log", "text/plain", "log")

    @app.get("/api/sessions/{session_id}/certificate.json")
    def session_certificate_json(session_id: str, _: None = Depends(require_key)):
        return _artifact(session_id, "json_artifact_path", "Certificate JSON", "application/json", "json")

    @app.get("/api/sessions/{session_id}/certificate.pdf")
    def session_certificate_pdf(session_id: str, _: None = Depends(require_key)):
        return _artifact(session_id, "pdf_artifact_path", "Certificate PDF", "application/pdf", "pdf")

    @app.post("/api/certificates/verify")
    def verify_certificate_json(certificate: Dict[str, Any] = Body(...), _: None = Depends(require_key)):
        if not certificate.get("signature"):
            raise ValidationError("Certificate is not signed")
        return {"success": True, "valid": verify_certificate(certificate), "keyId": certificate.get("keyId"),
                "sessionId": certificate.get("sessionId")}

    @app.websocket("/ws")
    async def telemetry_ws(websocket: WebSocket):
        # subscribe before accepting so a client never misses events published right after connect
        obs = broadcaster.subscribe()
        sender = None
        try:
            await websocket.accept()
            sender = asyncio.create_task(broadcaster.pump(obs, websocket.send_text))
            structured_log("observer_connected", observers=broadcaster.observer_count)
            # clients don't send anything meaningful; reading only detects disconnects
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(obs)
            if sender is not None:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)
            structured_log("observer_disconnected", observers=broadcaster.observer_count)

    return app


app = create_app()
