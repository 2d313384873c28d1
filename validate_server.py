"""
Live smoke check against a running server (python run.py).
Reports health, n8n connectivity and the registered operations.
"""
import asyncio
import sys

import httpx

GREEN = "\033[92m"
RED = "\033[91m"
RESET = "\033[0m"


async def check_server(base_url: str = "http://localhost:8000") -> bool:
    print(f"Testing Server at: {base_url}")

    async with httpx.AsyncClient(base_url=base_url, timeout=5.0) as client:
        try:
            health = await client.get("/health")
            operations = await client.get("/operations")
        except httpx.RequestError as e:
            print(f"{RED}ERROR: Could not connect to server.{RESET}")
            print(f"   Details: {e}")
            print("\n   Start it first with 'python run.py'")
            return False

    if health.status_code != 200 or operations.status_code != 200:
        print(f"{RED}ERROR: Server returned {health.status_code}/{operations.status_code}{RESET}")
        return False

    data = health.json()
    manifest = operations.json()
    print(f"{GREEN}SUCCESS: Server is ONLINE{RESET}")
    print(f"   Version: {data.get('version')}")
    print(f"   n8n Status: {data.get('n8n_connection')}")
    print(f"   Operations: {', '.join(op['name'] for op in manifest['operations'])}")
    return True


if __name__ == "__main__":
    url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    ok = asyncio.run(check_server(url))
    sys.exit(0 if ok else 1)
