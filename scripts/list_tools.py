from __future__ import annotations

import asyncio
import sys

from ghl_mcp.actions import GhlActions
from ghl_mcp.config import load_config


async def main() -> None:
    alias = sys.argv[1] if len(sys.argv) > 1 else "main"
    actions = GhlActions.from_config(load_config(), alias)
    try:
        tools_result = await actions.list_tools()
        print("Available tools:")
        for tool in tools_result.get("tools", []):
            print(f"- {tool.get('name')}: {tool.get('description', '')}")
    finally:
        await actions.close()


if __name__ == "__main__":
    asyncio.run(main())
