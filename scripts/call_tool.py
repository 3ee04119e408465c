from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Dict

from ghl_mcp.actions import GhlActions
from ghl_mcp.codec import parse_content
from ghl_mcp.config import load_config
from ghl_mcp.errors import GhlMcpError


async def main() -> None:
    if len(sys.argv) < 3:
        print("Usage: python scripts/call_tool.py <tool_name> '<json-args>' [location]")
        raise SystemExit(1)

    tool_name = sys.argv[1]
    raw_args = sys.argv[2]
    alias = sys.argv[3] if len(sys.argv) > 3 else "main"

    try:
        params: Dict[str, Any] = json.loads(raw_args)
    except ValueError as exc:
        print("Failed to parse JSON arguments")
        print(repr(exc))
        raise SystemExit(1)

    actions = GhlActions.from_config(load_config(), alias)
    try:
        result = await actions.call(tool_name, params)
        print("Tool call result:")
        print(json.dumps(parse_content(result), indent=2, ensure_ascii=False))
    except GhlMcpError as exc:
        print("Tool call failed:")
        print(repr(exc))
        raise SystemExit(1)
    finally:
        await actions.close()


if __name__ == "__main__":
    asyncio.run(main())
