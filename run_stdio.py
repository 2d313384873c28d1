"""
Stdio Entrypoint - For MCP Client Integration
Runs the FastMCP server in stdio mode for direct LLM integration.
"""
import logging
import sys

from workflow_vcs.main import mcp

if __name__ == "__main__":
    # stdout carries the MCP protocol; service logs go to stderr
    for name in ("vcs.gateway", "vcs.diff", "vcs.merge", "vcs.store", "vcs.engine"):
        for handler in logging.getLogger(name).handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setStream(sys.stderr)

    try:
        mcp.run()
    except KeyboardInterrupt:
        pass
