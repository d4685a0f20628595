"""
FastAPI server for simulator-Python communication bridge.
Receives telemetry events over a websocket and answers with steer commands.
"""

import asyncio
import time
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
import uvicorn

from bridge.protocol import (
    MANUAL_MESSAGE,
    STEER_EVENT,
    TELEMETRY_EVENT,
    MalformedTelemetryError,
    extract_payload,
    format_event,
    is_event_message,
    parse_event,
    parse_telemetry,
)
from data.formats.data_format import ActuatorCommand, Telemetry
from mpc_stack import ControlLoop, build_control_loop, load_config
from trajectory.utils import UnderdeterminedFitError

app = FastAPI(title="MPC Stack Bridge Server")

# Log slow ticks to spot solver stalls.
SLOW_TICK_SECONDS = 0.1
DEFAULT_PORT = 4567


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "mpc_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("mpc_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()

# Global state
server_config: dict = {}
control_loop: Optional[ControlLoop] = None
latest_control_command: Optional[dict] = None
tick_lock = asyncio.Lock()


def configure(config: Optional[dict] = None, loop: Optional[ControlLoop] = None) -> ControlLoop:
    """Install the configuration and control loop used by every session."""
    global server_config, control_loop, latest_control_command
    server_config = config if config is not None else load_config()
    control_loop = loop if loop is not None else build_control_loop(server_config)
    latest_control_command = None
    return control_loop


def get_control_loop() -> ControlLoop:
    if control_loop is None:
        return configure()
    return control_loop


def _dispatch_delay() -> float:
    latency_cfg = server_config.get("latency", {})
    if not latency_cfg.get("dispatch_delay_enabled", True):
        return 0.0
    return float(latency_cfg.get("actuation_delay_s", 0.1))


async def _run_tick(telemetry: Telemetry) -> dict:
    """Run one tick off the event loop; ticks never overlap."""
    global latest_control_command
    loop = get_control_loop()
    async with tick_lock:
        start_time = time.time()
        output = await asyncio.to_thread(loop.step, telemetry)
        duration = time.time() - start_time
        if duration > SLOW_TICK_SECONDS:
            logger.warning(
                "[SLOW] tick duration=%.3fs tick=%d converged=%s",
                duration,
                loop.tick_count,
                output.converged,
            )
        if not output.converged:
            logger.warning(
                "[FALLBACK] tick=%d fallbacks=%d message=%s",
                loop.tick_count,
                loop.fallback_count,
                output.metadata.get("solver_message", ""),
            )
        message = output.to_message()
        latest_control_command = {
            "steering_angle": message["steering_angle"],
            "throttle": message["throttle"],
            "converged": output.converged,
            "timestamp": time.time(),
        }
        return message


async def handle_message(message: str) -> Optional[str]:
    """
    Answer one websocket text message.

    Returns:
        Reply text, or None when the message needs no reply
    """
    if not is_event_message(message):
        return None

    payload = extract_payload(message)
    if payload is None:
        # Manual driving
        return MANUAL_MESSAGE

    try:
        event, data = parse_event(payload)
        if event != TELEMETRY_EVENT:
            return None
        telemetry = parse_telemetry(data)
    except MalformedTelemetryError as e:
        logger.warning("[MALFORMED] %s", e)
        return MANUAL_MESSAGE

    reply = await _run_tick(telemetry)

    delay = _dispatch_delay()
    if delay > 0.0:
        # Emulate real actuation latency before the command reaches the vehicle
        await asyncio.sleep(delay)
    return format_event(STEER_EVENT, reply)


async def _serve_session(websocket: WebSocket):
    await websocket.accept()
    # Each simulator connection starts from a neutral previous command
    get_control_loop().reset()
    logger.info("Connected")
    try:
        while True:
            message = await websocket.receive_text()
            reply = await handle_message(message)
            if reply is not None:
                await websocket.send_text(reply)
    except WebSocketDisconnect:
        logger.info("Disconnected")
    except UnderdeterminedFitError as e:
        logger.critical("[FIT] reference waypoints cannot be fit, closing session: %s", e)
        await websocket.close(code=1011)


@app.websocket("/")
async def telemetry_socket(websocket: WebSocket):
    """Simulator session on the root path."""
    await _serve_session(websocket)


@app.websocket("/socket.io/")
async def socketio_telemetry_socket(websocket: WebSocket):
    """Simulator session on the socket.io path."""
    await _serve_session(websocket)


@app.get("/", response_class=HTMLResponse)
async def index():
    return "<h1>Hello world!</h1>"


@app.post("/api/telemetry")
async def receive_telemetry(request: Request):
    """
    Run one control tick over HTTP.

    Returns:
        Steer payload, or a neutral command with status "manual" when the
        telemetry is absent or malformed
    """
    try:
        data = await request.json()
    except ValueError:
        data = None

    try:
        telemetry = parse_telemetry(data)
    except MalformedTelemetryError as e:
        logger.warning("[MALFORMED] /api/telemetry %s", e)
        neutral = ActuatorCommand.neutral()
        return {
            "status": "manual",
            "steering_angle": neutral.steering_angle,
            "throttle": neutral.throttle,
        }

    try:
        reply = await _run_tick(telemetry)
    except UnderdeterminedFitError as e:
        logger.critical("[FIT] /api/telemetry %s", e)
        raise HTTPException(status_code=500, detail=f"Reference fit failed: {str(e)}")

    return {"status": STEER_EVENT, **reply}


@app.get("/api/vehicle/control")
async def get_control_command():
    """
    Get latest control command sent to the vehicle.

    Returns:
        Control command (steering_angle, throttle), neutral if none yet
    """
    if latest_control_command is None:
        return {
            "steering_angle": 0.0,
            "throttle": 0.0,
            "converged": True,
            "timestamp": None,
        }
    return latest_control_command


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    loop = control_loop
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "tick_count": loop.tick_count if loop is not None else 0,
        "fallback_count": loop.fallback_count if loop is not None else 0,
    }


def run_server(config: Optional[dict] = None):
    """Run the bridge server."""
    configure(config)
    bridge_cfg = server_config.get("bridge", {})
    host = str(bridge_cfg.get("host", "0.0.0.0"))
    port = int(bridge_cfg.get("port", DEFAULT_PORT))

    logger.info("Listening to port %d", port)
    print(f"Starting MPC Stack Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  WS   /            - Simulator telemetry/steer events")
    print("  WS   /socket.io/  - Same, socket.io path")
    print("  POST /api/telemetry - Run one tick over HTTP")
    print("  GET  /api/vehicle/control - Latest command")
    print("  GET  /api/health - Health check")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server(load_config())
