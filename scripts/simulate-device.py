#!/usr/bin/env python3
"""Simulated ESP32 door controller for manual testing"""

import asyncio
import json
import sys

import socketio

PING_INTERVAL = 30


def main():
    """Main function"""
    url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:3000"
    device_id = sys.argv[2] if len(sys.argv) > 2 else "ESP32_SIM01"

    sio = socketio.AsyncClient()

    @sio.event
    async def connect():
        print(f"Connected to {url}, registering as {device_id}")
        await sio.emit(
            "esp32_register",
            {"deviceId": device_id, "chipId": "SIMULATED", "ip": "127.0.0.1"},
        )

    @sio.on("registered")
    async def on_registered(data):
        print(f"Registered: {json.dumps(data)}")

    @sio.on("door_trigger")
    async def on_door_trigger(data):
        print(f"\n[door_trigger] {json.dumps(data, indent=2)}")
        await asyncio.sleep(data.get("duration", 3000) / 1000)
        print("Door closed again, sending feedback")
        await sio.emit(
            "door_opened_feedback",
            {"deviceId": device_id, "roomName": data.get("roomName")},
        )

    @sio.on("devices_update")
    async def on_devices_update(data):
        print(f"Roster: {data.get('count')} device(s)")

    @sio.event
    async def disconnect():
        print("Disconnected")

    async def run():
        await sio.connect(url, transports=["websocket"])
        print("\nWaiting for triggers (Ctrl+C to exit)...")
        print(f"  curl -X POST {url}/api/trigger/{device_id}")
        print()
        while True:
            await asyncio.sleep(PING_INTERVAL)
            await sio.emit("ping")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
