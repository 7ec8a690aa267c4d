import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parent.parent))

from dispatch_engine.core.identity import parse_role, encode_actor

# Usage: python scripts/make_token.py <actor_id> <client|driver|operator>
actor_id = sys.argv[1] if len(sys.argv) > 1 else "client-1"
role = parse_role(sys.argv[2] if len(sys.argv) > 2 else "client")
if role is None:
    sys.exit("Unknown role")
print(encode_actor(actor_id, role))
