import asyncio
import json
import subprocess
import sys
from pathlib import Path

import httpx
import websockets

BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.append(str(BASE_DIR))

from dispatch_engine.core.identity import Role, encode_actor

SERVER_SCRIPT = BASE_DIR / "run.py"
BASE_URL = "http://127.0.0.1:4001/api/v1"
WS_URI = "ws://127.0.0.1:4001/ws/orders"

CLIENT_TOKEN = encode_actor("client-1", Role.CLIENT)
DRIVER_TOKEN = encode_actor("driver-1", Role.DRIVER)


async def run_roundtrip() -> None:
    """Client places an order, a driver accepts it, the client sees it live."""
    server = subprocess.Popen(
        [sys.executable, str(SERVER_SCRIPT)],
        cwd=BASE_DIR,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    try:
        # Give the server a moment to start
        await asyncio.sleep(3)
        async with httpx.AsyncClient(base_url=BASE_URL, timeout=10) as http:
            driver_headers = {"Authorization": f"Bearer {DRIVER_TOKEN}"}
            await http.put("/drivers/me/location", json={"lat": 42.8750, "lng": 74.5700}, headers=driver_headers)
            await http.put("/drivers/me/status", json={"status": "available"}, headers=driver_headers)

            response = await http.post(
                "/orders",
                json={
                    "content": "Roundtrip parcel",
                    "dropoff_address": "Chui Avenue 120",
                    "dropoff_lat": 42.8746,
                    "dropoff_lng": 74.5698,
                    "payment_method": "cash",
                    "amount": 20000,
                },
                headers={"Authorization": f"Bearer {CLIENT_TOKEN}"},
            )
            order = response.json()
            print(f"[client] created {order['code_order']} ({order['status']})")

            async with websockets.connect(WS_URI) as client_ws:
                await client_ws.send(json.dumps({"token": CLIENT_TOKEN}))
                await client_ws.recv()
                await client_ws.send(json.dumps({"action": "join_order_room", "orderId": order["id"]}))
                print(f"[client] {await client_ws.recv()}")

                await asyncio.sleep(0.5)
                response = await http.post(f"/orders/{order['id']}/accept", headers=driver_headers)
                print(f"[driver] accept -> {response.status_code}")

                payload = await asyncio.wait_for(client_ws.recv(), timeout=5)
                print(f"[client] received: {payload}")
    finally:
        server.terminate()
        try:
            server.wait(timeout=5)
        except subprocess.TimeoutExpired:
            server.kill()
        if server.stdout:
            print("--- server log ---")
            for line in server.stdout:
                print(line.rstrip())


if __name__ == "__main__":
    asyncio.run(run_roundtrip())
