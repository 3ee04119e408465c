from __future__ import annotations

import asyncio
import sys

from ghl_mcp.actions import GhlActions
from ghl_mcp.config import load_config
from ghl_mcp.errors import GhlMcpError


async def main() -> None:
    alias = sys.argv[1] if len(sys.argv) > 1 else "main"
    actions = GhlActions.from_config(load_config(), alias)
    print(f"Connecting to GHL MCP at {actions.client.url} for location '{alias}'...")
    try:
        print("Fetching tool list...")
        tools = await actions.list_tools()
        print(f"Found {len(tools.get('tools', []))} tools")
        print(f"Server: {actions.client.server_info}")

        print("Calling contacts search for health check...")
        try:
            await actions.search_contacts("", limit=1)
            print("contacts search OK")
        except GhlMcpError as exc:
            print("contacts search FAILED")
            print(repr(exc))
            raise SystemExit(1)
        print(f"Rate limit: {actions.rate_limiter_stats}")
    finally:
        await actions.close()


if __name__ == "__main__":
    asyncio.run(main())
