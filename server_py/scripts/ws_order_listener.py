import asyncio
import json
import sys
from pathlib import Path

import websockets

sys.path.append(str(Path(__file__).resolve().parent.parent))

from dispatch_engine.core.identity import Role, encode_actor

URI = "ws://127.0.0.1:4001/ws/orders"


async def main(order_id: str, actor_id: str, role: Role) -> None:
    async with websockets.connect(URI) as websocket:
        await websocket.send(json.dumps({"token": encode_actor(actor_id, role)}))
        print(await websocket.recv())
        await websocket.send(json.dumps({"action": "join_order_room", "orderId": order_id}))
        print(f"Listening on order {order_id} as {actor_id} ({role.value}), Ctrl+C to stop")
        while True:
            print(await websocket.recv())


if __name__ == "__main__":
    if len(sys.argv) < 2:
        sys.exit("Usage: python scripts/ws_order_listener.py <order_id> [actor_id] [role]")
    actor = sys.argv[2] if len(sys.argv) > 2 else "op-1"
    role = Role(sys.argv[3]) if len(sys.argv) > 3 else Role.OPERATOR
    asyncio.run(main(sys.argv[1], actor, role))
