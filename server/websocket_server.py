"""
WebSocket control server for the MIDI bridge.
"""

import argparse
import asyncio
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Set

import websockets
from websockets.asyncio.server import ServerConnection, serve

from midi.transfer import ImportRulesError
from midi.validation import MessageType, MessageValidator
from .config import DEFAULT_CONFIG_PATH, BridgeConfig, ConfigError, load_config
from .engine import TEST_OSC_ADDRESS, TEST_OSC_ARGS, BridgeEngine

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection states for the WebSocket server."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def _message(msg_type: str, payload: Any) -> str:
    return json.dumps({"type": msg_type, "payload": payload})


def _error(message: str) -> str:
    return _message("error", {"source": "ws_server", "message": message})


class WebSocketServer:
    """WebSocket server exposing the bridge engine to control clients."""

    def __init__(self, host: str = "localhost", port: int = 8765,
                 engine: Optional[BridgeEngine] = None):
        self.host = host
        self.port = port
        self.engine = engine or BridgeEngine()
        self.engine.add_listener(self._schedule_status_broadcast)
        self.server = None
        self.connection_state = ConnectionState.DISCONNECTED
        self.validator = MessageValidator()
        self._clients: Set[ServerConnection] = set()
        self._broadcast_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the engine and the WebSocket server."""
        try:
            await self.set_state(ConnectionState.CONNECTING)
            await self.engine.start()
            self.server = await serve(self.handle_client, self.host, self.port)
            logger.info(f"WebSocket server started on ws://{self.host}:{self.port}")
            await self.set_state(ConnectionState.CONNECTED)
        except Exception:
            logger.exception("Failed to start WebSocket server")
            await self.set_state(ConnectionState.ERROR)
            raise

    async def handle_client(self, websocket: ServerConnection, path: Optional[str] = None):
        """Handle WebSocket client connection."""
        logger.info(f"Client connected: {websocket.remote_address}")
        self._clients.add(websocket)
        try:
            await self.send_initial_state(websocket)

            async for message in websocket:
                try:
                    data = json.loads(message)
                    logger.debug(f"Received message: {data}")
                    await self.process_message(websocket, data)
                except json.JSONDecodeError:
                    logger.error(f"Invalid JSON from {websocket.remote_address}: {message}")
                    await websocket.send(_error("Invalid JSON format"))

        except websockets.exceptions.ConnectionClosedOK:
            logger.info(f"Client disconnected normally: {websocket.remote_address}")
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f"Client connection closed with error: {websocket.remote_address} - {e}")
        except Exception:
            logger.exception(f"WebSocket handler error for {websocket.remote_address}")
        finally:
            logger.info(f"Removing client: {websocket.remote_address}")
            self._clients.discard(websocket)

    async def send_initial_state(self, websocket: ServerConnection):
        """Send status and rules to a newly connected client."""
        try:
            await websocket.send(_message("status", self.engine.get_status()))
            await websocket.send(_message("rules", self.engine.get_rules()))
        except Exception as e:
            logger.error(f"Error sending initial state to {websocket.remote_address}: {e}")

    async def process_message(self, websocket: ServerConnection, data: Dict[str, Any]):
        """Validate and execute one command from a client."""
        errors = self.validator.validate_message(data)
        if errors:
            error_text = self.validator.format_errors(errors)
            logger.warning(f"Rejected message {data!r}: {error_text}")
            await websocket.send(_error(error_text))
            return

        msg_type = MessageType(data["type"])
        payload = data.get("payload", {})
        logger.debug(f"Processing message type: {msg_type.value} with payload: {payload}")
        engine = self.engine

        try:
            if msg_type == MessageType.GET_STATUS:
                await websocket.send(_message("status", engine.get_status()))

            elif msg_type in (MessageType.GET_MIDI_PORTS, MessageType.REFRESH_PORTS):
                ports = engine.refresh_ports() if msg_type == MessageType.REFRESH_PORTS else engine.port_names()
                await websocket.send(_message("midi_ports", {"ports": ports}))

            elif msg_type == MessageType.CONNECT_MIDI:
                if not engine.connect_midi(payload["port"]):
                    await websocket.send(_error(f"Could not open MIDI port {payload['port']}"))

            elif msg_type == MessageType.DISCONNECT_MIDI:
                engine.disconnect_midi()

            elif msg_type == MessageType.GET_RULES:
                await websocket.send(_message("rules", engine.get_rules()))

            elif msg_type == MessageType.RULE_ACTION:
                engine.rule_action(payload["index"], payload["action"])
                await self.broadcast(_message("rules", engine.get_rules()))

            elif msg_type == MessageType.CLEAR_RULES:
                engine.clear_rules()
                await self.broadcast(_message("rules", engine.get_rules()))

            elif msg_type == MessageType.EXPORT_RULES:
                await websocket.send(_message("export", {"text": engine.export_rules()}))

            elif msg_type == MessageType.IMPORT_RULES:
                try:
                    result = engine.import_rules(payload["text"])
                except ImportRulesError as e:
                    logger.error(f"Failed to import rules: {e}")
                    await websocket.send(_message("import_failed", {
                        "message": str(e),
                        "extracted": e.debug_prefix,
                    }))
                    return
                await websocket.send(_message("import_complete", {
                    "count": len(engine.store),
                    "midiPort": result.midi_port,
                }))
                await self.broadcast(_message("rules", engine.get_rules()))

            elif msg_type == MessageType.LOAD_RULES_TEXT:
                diagnostics = engine.load_rules_text(payload["text"])
                await websocket.send(_message("rules_text_loaded", {
                    "count": len(engine.store),
                    "diagnostics": diagnostics,
                }))
                await self.broadcast(_message("rules", engine.get_rules()))

            elif msg_type == MessageType.TRIGGER_RULE:
                sent = engine.trigger_rule(payload["index"], payload.get("value", 127))
                if not sent:
                    await websocket.send(_error(f"Rule {payload['index'] + 1} was not triggered"))

            elif msg_type in (MessageType.ADD_RULE, MessageType.UPDATE_RULE):
                if msg_type == MessageType.ADD_RULE:
                    rule_errors = engine.add_rule(payload.get("fields"))
                else:
                    rule_errors = engine.update_rule(payload["index"], payload["fields"])
                if rule_errors:
                    await websocket.send(_error(self.validator.format_errors(rule_errors)))
                    return
                await self.broadcast(_message("rules", engine.get_rules()))

            elif msg_type == MessageType.SET_RULE_COUNT:
                if not engine.set_rule_count(payload["count"]):
                    await websocket.send(_error(f"Rule count must be between 1 and {engine.store.capacity}"))
                    return
                await self.broadcast(_message("rules", engine.get_rules()))

            elif msg_type == MessageType.RESET_STATS:
                engine.reset_stats()
                await websocket.send(_message("status", engine.get_status()))

            elif msg_type == MessageType.SEND_TEST_OSC:
                sent = engine.send_test_osc(
                    payload.get("address", TEST_OSC_ADDRESS),
                    payload.get("args", TEST_OSC_ARGS),
                    payload.get("host", "127.0.0.1"),
                    payload.get("port", 8000),
                )
                if not sent:
                    await websocket.send(_error("Test OSC message could not be sent"))

            elif msg_type == MessageType.GET_DIAGNOSTICS:
                await websocket.send(_message("diagnostics", engine.get_diagnostics()))

        except Exception as e:
            logger.exception(f"Error processing message type {msg_type.value}")
            engine.errors.add_error("message_processing", str(e), str(data))
            await websocket.send(_error(f"Internal server error processing '{msg_type.value}': {e}"))

    # --- Broadcasting ---
    async def broadcast(self, message: str) -> None:
        if not self._clients:
            return
        clients = list(self._clients)
        results = await asyncio.gather(*[client.send(message) for client in clients], return_exceptions=True)
        for res, client in zip(results, clients):
            if isinstance(res, Exception):
                logger.error(f"Failed to send update to client {client.remote_address}: {res}")

    async def broadcast_status(self) -> None:
        await self.broadcast(_message("status", self.engine.get_status()))

    def _schedule_status_broadcast(self) -> None:
        """Engine listener; coalesces bursts of changes into one broadcast."""
        if not self._clients:
            return
        if self._broadcast_task is not None and not self._broadcast_task.done():
            return
        self._broadcast_task = asyncio.get_running_loop().create_task(self.broadcast_status())

    async def set_state(self, new_state: ConnectionState):
        """Set connection state and broadcast."""
        if new_state != self.connection_state:
            logger.info(f"WebSocket Server state changed: {self.connection_state.value} -> {new_state.value}")
            self.connection_state = new_state
            await self.broadcast(_message("connection_state", {"state": new_state.value}))

    async def stop(self):
        """Stop the server."""
        logger.info("Stopping WebSocket server...")
        if self._broadcast_task is not None and not self._broadcast_task.done():
            self._broadcast_task.cancel()
            await asyncio.gather(self._broadcast_task, return_exceptions=True)

        await self.engine.stop()

        logger.info(f"Closing {len(self._clients)} client connections...")
        if self._clients:
            results = await asyncio.gather(
                *[client.close(code=1001, reason='Server shutdown') for client in self._clients],
                return_exceptions=True
            )
            for res, client in zip(results, list(self._clients)):
                if isinstance(res, Exception):
                    logger.error(f"Error closing client {client.remote_address}: {res}")
        self._clients.clear()

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            logger.info("WebSocket server closed.")

        await self.set_state(ConnectionState.DISCONNECTED)


async def main(config: BridgeConfig):
    """Run the bridge until interrupted."""
    engine = BridgeEngine(config)
    server = WebSocketServer(config.ws_host, config.ws_port, engine)
    await server.start()
    logger.info(f"Available MIDI inputs: {engine.port_names()}")
    logger.info(f"Bridge running in {config.mode} mode with {len(engine.store.enabled_rules())} active rules")

    try:
        await asyncio.Future()
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.info("Shutdown signal received.")
    finally:
        await server.stop()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MIDI to OSC / Companion button bridge")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the JSON configuration file")
    parser.add_argument("--mode", choices=("osc", "press"), help="Output mode")
    parser.add_argument("--midi-port", help="Name of the MIDI input port to open")
    parser.add_argument("--rules-file", help="Path of the persisted rules (slot form JSON)")
    parser.add_argument("--rules-text", help="Path of a rules text file to load at startup")
    parser.add_argument("--host", help="WebSocket host")
    parser.add_argument("--port", type=int, help="WebSocket port")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    logging.basicConfig(level=logging.INFO, format=log_format)
    logging.getLogger('websockets').setLevel(logging.WARNING)

    try:
        bridge_config = load_config(args.config, overrides={
            "mode": args.mode,
            "midi_port": args.midi_port,
            "rules_file": args.rules_file,
            "rules_text_file": args.rules_text,
            "ws_host": args.host,
            "ws_port": args.port,
            "log_level": args.log_level.upper() if args.log_level else None,
        })
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(2)

    logging.getLogger().setLevel(bridge_config.log_level.upper())
    try:
        asyncio.run(main(bridge_config))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    except Exception:
        logger.exception("Unhandled error during application startup or runtime.")
