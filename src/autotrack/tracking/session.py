from __future__ import annotations

import json
import logging
import socket
import time
from enum import Enum
from typing import Any, Dict, Literal, Optional, Protocol

from websockets.exceptions import WebSocketException
from websockets.sync.client import ClientConnection
from websockets.sync.client import connect as ws_connect

logger = logging.getLogger(__name__)

AddressSpace = Literal["usb2snes", "bus"]

USB2SNES_WRAM_START = 0xF50000
USB2SNES_WRAM_END = 0xF70000
SNES_BUS_WRAM_START = 0x7E0000


class SessionError(RuntimeError):
    """Base exception for console-memory session failures."""


class ConnectError(SessionError):
    """Raised when the protocol endpoint is unreachable or rejects the handshake."""


class ReadTimeout(SessionError):
    """Raised when a read gets no response before its deadline."""


class Disconnected(SessionError):
    """Raised when the transport is lost or was never connected."""


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(Protocol):
    """Wire-level collaborator: owns framing, exposes open/request/close.

    ``request`` raises ``TimeoutError`` when no answer arrives in time and
    ``OSError`` for anything else that breaks the link.
    """

    def open(self, timeout: float) -> None: ...

    def request(self, address: int, length: int, timeout: float) -> bytes: ...

    def close(self) -> None: ...


def usb2snes_to_bus(address: int) -> int:
    """Map a usb2snes WRAM address (0xF50000..0xF6FFFF) onto the SNES bus (0x7E0000..)."""
    if USB2SNES_WRAM_START <= address < USB2SNES_WRAM_END:
        return SNES_BUS_WRAM_START + (address - USB2SNES_WRAM_START)
    return address


def bus_to_usb2snes(address: int) -> int:
    """Inverse of usb2snes_to_bus for the WRAM window."""
    if SNES_BUS_WRAM_START <= address < SNES_BUS_WRAM_START + (USB2SNES_WRAM_END - USB2SNES_WRAM_START):
        return USB2SNES_WRAM_START + (address - SNES_BUS_WRAM_START)
    return address


class RetroArchTransport:
    """RetroArch network command interface over UDP (READ_CORE_MEMORY)."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 55355,
        address_space: AddressSpace = "usb2snes",
    ):
        self.host = host
        self.port = int(port)
        self.address_space = address_space
        self._sock: Optional[socket.socket] = None

    def open(self, timeout: float) -> None:
        self.close()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(timeout)
        try:
            sock.connect((self.host, self.port))
            sock.send(b"VERSION")
            data = sock.recv(65535)
        except OSError:
            sock.close()
            raise
        if not data.strip():
            sock.close()
            raise OSError(f"Empty VERSION reply from {self.host}:{self.port}")
        logger.debug("RetroArch %s:%s version %s", self.host, self.port, data.decode("utf-8", "replace").strip())
        self._sock = sock

    def _translate(self, address: int) -> int:
        if self.address_space == "usb2snes":
            return usb2snes_to_bus(address)
        return address

    def request(self, address: int, length: int, timeout: float) -> bytes:
        if self._sock is None:
            raise OSError("RetroArch transport is not open.")
        bus_address = self._translate(address)
        self._sock.settimeout(timeout)
        self._sock.send(f"READ_CORE_MEMORY {bus_address:X} {length}".encode())

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"READ_CORE_MEMORY {bus_address:#x} timed out")
            self._sock.settimeout(remaining)
            try:
                data = self._sock.recv(65535)
            except socket.timeout as exc:
                raise TimeoutError(f"READ_CORE_MEMORY {bus_address:#x} timed out") from exc
            parts = data.decode("utf-8", errors="replace").split()
            if len(parts) < 3 or parts[0] != "READ_CORE_MEMORY":
                continue
            try:
                echoed = int(parts[1], 16)
            except ValueError:
                continue
            if echoed != bus_address:
                # Stale reply to an earlier timed-out request.
                continue
            if parts[2] == "-1":
                raise OSError(f"RetroArch refused read at {bus_address:#x}: {' '.join(parts[3:])}")
            try:
                return bytes(int(item, 16) for item in parts[2:])
            except ValueError as exc:
                raise OSError(f"Malformed READ_CORE_MEMORY reply: {exc}") from exc

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
        self._sock = None


class Usb2SnesTransport:
    """usb2snes / QUsb2Snes websocket protocol: DeviceList, Attach, then GetAddress reads.

    Replies to GetAddress arrive as one or more binary frames that together
    carry exactly the requested number of bytes.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8080,
        address_space: AddressSpace = "usb2snes",
        device: str = "",
        client_name: str = "autotrack",
    ):
        self.host = host
        self.port = int(port)
        self.address_space = address_space
        self.requested_device = device
        self.client_name = client_name
        self.device = ""
        self._ws: Optional[ClientConnection] = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def open(self, timeout: float) -> None:
        self.close()
        try:
            ws = ws_connect(self.url, open_timeout=timeout, max_size=None)
        except WebSocketException as exc:
            raise OSError(f"usb2snes handshake with {self.url} failed: {exc}") from exc
        try:
            self._send(ws, "DeviceList")
            devices = self._results(ws.recv(timeout=timeout))
            if not devices:
                raise OSError(f"usb2snes at {self.url} reports no devices.")
            device = self.requested_device or devices[0]
            if device not in devices:
                raise OSError(f"usb2snes device '{device}' not found; available: {', '.join(devices)}")
            self._send(ws, "Attach", [device])
            self._send(ws, "Name", [self.client_name])
        except WebSocketException as exc:
            ws.close()
            raise OSError(f"usb2snes at {self.url} dropped the connection: {exc}") from exc
        except OSError:
            ws.close()
            raise
        logger.debug("usb2snes %s attached to %s", self.url, device)
        self.device = device
        self._ws = ws

    def _send(self, ws: ClientConnection, opcode: str, operands: Optional[list[str]] = None) -> None:
        message: Dict[str, Any] = {"Opcode": opcode, "Space": "SNES"}
        if operands is not None:
            message["Operands"] = operands
        ws.send(json.dumps(message))

    @staticmethod
    def _results(reply: str | bytes) -> list[str]:
        if isinstance(reply, bytes):
            raise OSError("Expected a JSON reply from usb2snes, got binary data.")
        try:
            payload = json.loads(reply)
        except ValueError as exc:
            raise OSError(f"Malformed usb2snes reply: {exc}") from exc
        results = payload.get("Results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise OSError("usb2snes reply has no 'Results' list.")
        return [str(item) for item in results]

    def _translate(self, address: int) -> int:
        if self.address_space == "bus":
            return bus_to_usb2snes(address)
        return address

    def request(self, address: int, length: int, timeout: float) -> bytes:
        if self._ws is None:
            raise OSError("usb2snes transport is not open.")
        wram_address = self._translate(address)
        data = bytearray()
        deadline = time.monotonic() + timeout
        try:
            self._send(self._ws, "GetAddress", [f"{wram_address:X}", f"{length:X}"])
            while len(data) < length:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"GetAddress {wram_address:#x} timed out")
                frame = self._ws.recv(timeout=remaining)
                if isinstance(frame, str):
                    raise OSError(f"Unexpected text reply to GetAddress {wram_address:#x}: {frame[:80]}")
                data.extend(frame)
        except WebSocketException as exc:
            raise OSError(f"usb2snes connection lost during GetAddress {wram_address:#x}: {exc}") from exc
        return bytes(data[:length])

    def close(self) -> None:
        if self._ws is not None:
            self._ws.close()
        self._ws = None
        self.device = ""


class ConnectionSession:
    """Owns one transport and its Disconnected/Connecting/Connected status.

    The session never reconnects on its own; the poller decides when.
    """

    def __init__(self, transport: Transport, timeout: float = 1.0, endpoint: str = ""):
        self.transport = transport
        self.timeout = max(0.01, float(timeout))
        self.endpoint = endpoint
        self.status = SessionStatus.DISCONNECTED
        self.reads_total = 0
        self.read_failures_total = 0
        self.connects_total = 0
        self._last_error: Dict[str, str] = {}

    @property
    def connected(self) -> bool:
        return self.status is SessionStatus.CONNECTED

    def connect(self) -> "ConnectionSession":
        self.status = SessionStatus.CONNECTING
        try:
            self.transport.open(self.timeout)
        except (OSError, TimeoutError) as exc:
            self.status = SessionStatus.DISCONNECTED
            self._set_last_error("connect", exc)
            raise ConnectError(f"Unable to connect to {self.endpoint or 'endpoint'}: {exc}") from exc
        self.status = SessionStatus.CONNECTED
        self.connects_total += 1
        self._last_error = {}
        logger.info("Session connected to %s", self.endpoint or "endpoint")
        return self

    def read(self, address: int, length: int) -> bytes:
        if not self.connected:
            raise Disconnected("Session is not connected.")
        self.reads_total += 1
        try:
            data = self.transport.request(address, length, self.timeout)
        except TimeoutError as exc:
            self._fail("read", exc)
            raise ReadTimeout(f"Read {address:#x}+{length} timed out after {self.timeout:.2f}s") from exc
        except OSError as exc:
            self._fail("read", exc)
            raise Disconnected(f"Transport lost during read {address:#x}+{length}: {exc}") from exc
        return bytes(data)

    def close(self) -> None:
        if self.status is SessionStatus.DISCONNECTED:
            return
        try:
            self.transport.close()
        except OSError as exc:
            logger.debug("Ignoring transport close failure: %s", exc)
        self.status = SessionStatus.DISCONNECTED

    def status_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "endpoint": self.endpoint,
            "timeout_s": self.timeout,
            "reads_total": int(self.reads_total),
            "read_failures_total": int(self.read_failures_total),
            "connects_total": int(self.connects_total),
            "last_error": dict(self._last_error),
        }

    def _fail(self, stage: str, error: Exception) -> None:
        self.read_failures_total += 1
        self._set_last_error(stage, error)
        try:
            self.transport.close()
        except OSError as exc:
            logger.debug("Ignoring transport close failure after %s error: %s", stage, exc)
        self.status = SessionStatus.DISCONNECTED

    def _set_last_error(self, stage: str, error: Exception) -> None:
        self._last_error = {
            "stage": stage,
            "type": type(error).__name__,
            "message": str(error),
        }
