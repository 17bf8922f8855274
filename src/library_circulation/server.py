"""Library Circulation MCP Server - FastMCP Implementation

Exposes the circulation engine of a lending library as MCP tools: checkout,
return and renewal of loans, the hold queue, fines, the circulation policy and
the overdue/expiry sweeps.

Clients connect via stdio (default) or Streamable HTTP. Every tool call names
the authenticated actor performing it.
"""

import logging
import signal
import sys
from typing import Any

from fastmcp import FastMCP

from .config import ServerConfig, get_config
from .database.session import get_db_manager
from .observability import initialize_observability
from .tools import all_tools

# stderr for logs, stdout is the MCP stdio channel
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)

logger = logging.getLogger(__name__)

HTTP_TRANSPORT = "streamable-http"


def create_server(config: ServerConfig | None = None) -> FastMCP:
    """Create the FastMCP server and register every circulation tool."""
    config = config or get_config()

    mcp = FastMCP(
        name=config.server_name,
        version=config.server_version,
        instructions=(
            "Library Circulation MCP Server - lends material copies to members and "
            "tracks loans, renewals, holds and fines. Every tool takes an 'actor' "
            "({id, role}) identifying the authenticated staff member or library member. "
            "Refusals report a category (not_found, invalid_state, policy_violation, "
            "conflict, forbidden) and, for policy violations, every reason."
        ),
    )

    for tool in all_tools:
        logger.debug("Registering tool: %s", tool["name"])
        try:
            mcp.tool(
                name=tool["name"],
                description=tool["description"],
            )(tool["handler"])
        except Exception:
            logger.exception("Failed to register tool %s", tool["name"])
            raise

    logger.info("Registered %d tools", len(all_tools))
    return mcp


def run_server(mcp: FastMCP, config: ServerConfig) -> None:
    """Run the server on the configured transport until it is stopped."""
    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled - verbose protocol logging active")
    else:
        logging.getLogger().setLevel(config.log_level)
        logging.getLogger("fastmcp").setLevel(logging.WARNING)

    def signal_handler(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, initiating shutdown...", signum)
        get_db_manager().close()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if config.transport == "stdio":
        logger.info("Starting %s v%s on stdio transport", config.server_name, config.server_version)
        mcp.run(transport="stdio")
    else:
        logger.info(
            "Starting %s v%s on http://%s:%d",
            config.server_name,
            config.server_version,
            config.http_host,
            config.http_port,
        )
        mcp.run(transport=HTTP_TRANSPORT, host=config.http_host, port=config.http_port)


def main() -> None:
    """Main entry point for the MCP server."""
    try:
        config = get_config()
        logger.info("=" * 60)
        logger.info("Library Circulation MCP Server")
        logger.info("Version: %s", config.server_version)
        logger.info("Transport: %s", config.transport)
        logger.info("Debug Mode: %s", config.debug)
        logger.info("=" * 60)

        initialize_observability()

        db = get_db_manager()
        db.init_database()
        if not db.verify_connection():
            logger.error("Database is not reachable")
            sys.exit(1)

        run_server(create_server(config), config)

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception:
        logger.exception("Failed to start MCP server")
        sys.exit(1)


if __name__ == "__main__":
    main()
