"""
FortressMDM device agent

Runs the device half of the protocol against a server:
push status -> poll pending commands -> execute each -> report each result,
once per tick, ticks strictly sequential.

A failed status push abandons the tick; the next tick starts over. A failed
result report is only logged: the command stays pending on the server and is
delivered again on a later poll, so handlers must tolerate re-execution.

Usage:
    python device_agent.py --server http://localhost:8000 --code ENROLL_CODE --name "Lobby tablet" --imei 356938035643809
    python device_agent.py --server http://localhost:8000 --token EXISTING_TOKEN --ticks 10
"""

import argparse
import asyncio
import inspect
import random
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from config import config
from observability import structured_logger

# Matches the server-side bound on CommandResultRequest.error
MAX_ERROR_LENGTH = 1000

HandlerResult = Union[None, bool, Dict[str, Any]]
Handler = Callable[[Dict[str, Any]], Union[HandlerResult, Awaitable[HandlerResult]]]


class CommandFailed(Exception):
    """Raised by the executor when a command cannot be carried out"""


@dataclass
class TickResult:
    """Outcome of one heartbeat tick"""
    abandoned: bool = False
    error: Optional[str] = None
    executed: List[tuple] = field(default_factory=list)
    unreported: List[int] = field(default_factory=list)


@dataclass
class SimulatedDevice:
    """Device state mutated by the default command handlers"""
    battery_level: int = 100
    is_online: bool = True
    is_kiosk_mode: bool = False
    locked: bool = False
    wiped: bool = False
    controls: Dict[str, bool] = field(default_factory=dict)
    location: Optional[Dict[str, float]] = None

    def status_payload(self) -> Dict[str, Any]:
        payload = {
            "batteryLevel": self.battery_level,
            "isOnline": self.is_online,
            "isKioskMode": self.is_kiosk_mode,
            "lastSeen": datetime.now(timezone.utc).isoformat(),
        }
        if "wifi" in self.controls:
            payload["wifiEnabled"] = self.controls["wifi"]
        if self.location:
            payload["location"] = self.location
        return payload


class CommandExecutor:
    """
    Maps command names to handlers.

    A handler receives the command record and may be sync or async. Returning
    False or raising marks the command failed; anything else is success, and
    a dict return is sent back as the command response. Unknown commands fail.
    """

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        self.handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, name: str, handler: Handler):
        self.handlers[name] = handler

    async def execute(self, command: Dict[str, Any]) -> tuple[bool, Optional[str], Optional[Dict[str, Any]]]:
        name = command.get("command")
        handler = self.handlers.get(name)
        if handler is None:
            return False, f"Unknown command: {name}"[:MAX_ERROR_LENGTH], None

        try:
            result = handler(command)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            return False, (str(e) or type(e).__name__)[:MAX_ERROR_LENGTH], None

        if result is False:
            return False, f"Command {name} reported failure", None
        return True, None, result if isinstance(result, dict) else None


def default_executor(device: SimulatedDevice) -> CommandExecutor:
    """Handlers for every command the server issues, acting on a simulated device."""
    executor = CommandExecutor()

    def lock(command):
        device.locked = True

    def wipe(command):
        device.wiped = True
        device.is_kiosk_mode = False
        device.controls.clear()

    def reboot(command):
        device.locked = False

    def locate(command):
        device.location = {
            "latitude": round(random.uniform(-90, 90), 6),
            "longitude": round(random.uniform(-180, 180), 6),
        }
        return {"location": device.location}

    def set_kiosk(enabled):
        def handler(command):
            device.is_kiosk_mode = enabled
        return handler

    def set_control(action, enabled):
        def handler(command):
            device.controls[action] = enabled
        return handler

    for name, handler in (("lock", lock), ("wipe", wipe), ("reboot", reboot), ("locate", locate)):
        executor.register(name, handler)
    executor.register("emergency_lock", lock)
    executor.register("emergency_wipe", wipe)
    executor.register("kiosk_enable", set_kiosk(True))
    executor.register("kiosk_disable", set_kiosk(False))

    for action in ("wifi", "mobile_data", "gps", "bluetooth", "camera", "microphone", "usb"):
        executor.register(f"{action}_enable", set_control(action, True))
        executor.register(f"{action}_disable", set_control(action, False))

    return executor


class DeviceAgent:
    def __init__(
        self,
        server_url: str,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        executor: Optional[CommandExecutor] = None,
        status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        interval: float = 30
    ):
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = client is None
        self.device = SimulatedDevice()
        self.executor = executor or default_executor(self.device)
        self.status_provider = status_provider or self.device.status_payload
        self.interval = interval
        self.device_id: Optional[int] = None
        self.running = False
        self._stop_event = asyncio.Event()

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            raise RuntimeError("Device is not enrolled")
        return {"Authorization": f"Bearer {self.token}"}

    async def enroll(self, enrollment_code: str, device_info: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.client.post(
            f"{self.server_url}/api/enroll",
            json={"enrollmentCode": enrollment_code, "deviceInfo": device_info}
        )
        response.raise_for_status()
        data = response.json()

        self.token = data["token"]
        self.device_id = data["deviceId"]
        structured_logger.log_event(
            "agent.enrolled",
            device_id=self.device_id,
            server_version=data.get("serverVersion")
        )
        return data

    async def send_status(self) -> None:
        response = await self.client.post(
            f"{self.server_url}/api/device/status",
            json=self.status_provider(),
            headers=self._headers()
        )
        response.raise_for_status()

    async def check_for_commands(self) -> List[Dict[str, Any]]:
        response = await self.client.get(
            f"{self.server_url}/api/device/commands",
            headers=self._headers()
        )
        response.raise_for_status()
        return response.json()

    async def report_result(
        self,
        command_id: int,
        success: bool,
        error: Optional[str] = None,
        response_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": success, "timestamp": datetime.now(timezone.utc).isoformat()}
        if error:
            body["error"] = error
        if response_data:
            body["response"] = response_data

        response = await self.client.post(
            f"{self.server_url}/api/device/command/{command_id}/result",
            json=body,
            headers=self._headers()
        )
        response.raise_for_status()
        return response.json()

    async def tick(self) -> TickResult:
        result = TickResult()

        try:
            await self.send_status()
        except httpx.HTTPError as e:
            result.abandoned = True
            result.error = str(e) or type(e).__name__
            structured_logger.log_event(
                "agent.tick.abandoned",
                level="WARN",
                device_id=self.device_id,
                stage="status",
                error=result.error
            )
            return result

        try:
            pending = await self.check_for_commands()
        except httpx.HTTPError as e:
            result.error = str(e) or type(e).__name__
            structured_logger.log_event(
                "agent.poll.failed",
                level="WARN",
                device_id=self.device_id,
                error=result.error
            )
            return result

        for command in pending:
            success, error, response_data = await self.executor.execute(command)
            result.executed.append((command["id"], success))

            structured_logger.log_event(
                "agent.command.executed",
                device_id=self.device_id,
                command_id=command["id"],
                command=command.get("command"),
                success=success,
                error=error
            )

            try:
                await self.report_result(command["id"], success, error, response_data)
            except httpx.HTTPError as e:
                # Left pending server-side; redelivered on a later poll
                result.unreported.append(command["id"])
                structured_logger.log_event(
                    "agent.result.report_failed",
                    level="WARN",
                    device_id=self.device_id,
                    command_id=command["id"],
                    error=str(e) or type(e).__name__
                )

        return result

    async def run(self, max_ticks: Optional[int] = None) -> int:
        """Tick until stop() or max_ticks; returns the number of ticks run."""
        self.running = True
        self._stop_event.clear()
        ticks = 0

        structured_logger.log_event(
            "agent.started",
            device_id=self.device_id,
            interval_seconds=self.interval
        )

        try:
            while self.running and (max_ticks is None or ticks < max_ticks):
                await self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            structured_logger.log_event("agent.stopped", device_id=self.device_id, ticks=ticks)

        return ticks

    def stop(self):
        self.running = False
        self._stop_event.set()

    async def close(self):
        if self._owns_client:
            await self.client.aclose()


async def main():
    parser = argparse.ArgumentParser(description="FortressMDM device agent")
    parser.add_argument("--server", type=str, default=config.server_url, help="API base URL")
    parser.add_argument("--token", type=str, help="Existing device token (skips enrollment)")
    parser.add_argument("--code", type=str, help="Enrollment code")
    parser.add_argument("--name", type=str, default="fortress-agent", help="Device name reported at enrollment")
    parser.add_argument("--imei", type=str, help="Device IMEI")
    parser.add_argument("--serial", type=str, help="Device serial number")
    parser.add_argument("--device-type", type=str, default="android", choices=["android", "ios", "windows"])
    parser.add_argument("--interval", type=float, default=config.get_heartbeat_interval_seconds(),
                        help="Seconds between heartbeats")
    parser.add_argument("--ticks", type=int, help="Stop after this many heartbeats")

    args = parser.parse_args()

    if not args.token and not args.code:
        parser.error("either --token or --code is required")
    if not args.token and not (args.imei or args.serial):
        parser.error("enrollment needs --imei or --serial")

    agent = DeviceAgent(args.server, token=args.token, interval=args.interval)

    try:
        if not args.token:
            data = await agent.enroll(args.code, {
                "deviceName": args.name,
                "imei": args.imei,
                "serialNumber": args.serial,
                "deviceType": args.device_type,
                "batteryLevel": agent.device.battery_level,
                "isOnline": True,
            })
            print(f"Enrolled as device {data['deviceId']}")
            print(f"Token: {data['token']}")

        await agent.run(max_ticks=args.ticks)
    except KeyboardInterrupt:
        agent.stop()
        print("\nAgent interrupted by user")
    except httpx.HTTPError as e:
        print(f"\nAgent failed: {e}")
        sys.exit(1)
    finally:
        await agent.close()


if __name__ == "__main__":
    asyncio.run(main())
