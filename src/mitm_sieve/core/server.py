import json
import logging
import sys
from typing import Optional

import structlog
from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from ..errors import BindError, ListImportError, PersistenceError, PolicyUpdateError
from ..models import (
    AddEntry,
    FilterMode,
    ListName,
    LogLevel,
    RemoveEntry,
    RenameEntry,
    SetMode,
)
from .controller import ProxyController
from .store import StateStore
from .utils import rows_from_csv, rows_to_csv

# Configure structlog
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

# Configure standard logging to output the JSON string as-is
logging.basicConfig(
    format="%(message)s",
    level=logging.INFO,
    stream=sys.stderr,
)

logger = structlog.get_logger()


# Global Controller Instance
controller = ProxyController(StateStore())

mcp = FastMCP("Proxy Sieve")


def _list_name(value: str) -> ListName:
    try:
        return ListName(value.strip().lower())
    except ValueError:
        raise ValueError("List name needs to be either 'allow' or 'deny'") from None


def _describe_policy() -> str:
    policy = controller.policy
    return json.dumps(
        {
            "mode": policy.mode.value,
            "version": policy.version,
            "allow": list(policy.allow.entries),
            "deny": list(policy.deny.entries),
        },
        indent=2,
    )


# --- MCP Tools ---


@mcp.tool()
async def start_proxy(port: Optional[int] = None) -> str:
    try:
        if port is not None and port != controller.settings.port:
            controller.set_port(port)
        status = await controller.start()
    except (BindError, ValidationError, PersistenceError) as e:
        logger.error("proxy_start_failed", error=str(e))
        return f"Couldn't start the proxy: {str(e)}"
    return f"Proxy is {status.state.value} on {status.settings.bind_address}:{status.settings.port}"


@mcp.tool()
async def stop_proxy() -> str:
    if not controller.running:
        return "The proxy isn't running right now."
    status = await controller.stop()
    if status.error:
        return f"Stopped the proxy, but couldn't save state: {status.error}"
    return "Stopped the proxy."


@mcp.tool()
async def proxy_status() -> str:
    return controller.status().model_dump_json(indent=2)


@mcp.tool()
async def get_policy() -> str:
    return _describe_policy()


@mcp.tool()
async def set_filter_mode(mode: str) -> str:
    """
    Switch the filter mode. Both lists are kept whatever the mode.
    Args:
        mode: disabled, block_by_default (only allow-list matches pass)
              or allow_by_default (deny-list matches are blocked)
    """
    try:
        policy = controller.update_policy(SetMode(mode=FilterMode(mode.strip().lower())))
    except ValueError:
        modes = ", ".join(m.value for m in FilterMode)
        return f"Mode needs to be one of: {modes}"
    except PersistenceError as e:
        return f"Mode changed, but couldn't save it: {str(e)}"
    return f"Filter mode is now {policy.mode.value}"


@mcp.tool()
async def add_filter_entry(list_name: str, pattern: str) -> str:
    try:
        name = _list_name(list_name)
        controller.update_policy(AddEntry(list_name=name, pattern=pattern))
    except PolicyUpdateError as e:
        return f"Couldn't add that entry: {str(e)}"
    except ValueError as e:
        return str(e)
    except PersistenceError as e:
        return f"Added, but couldn't save it: {str(e)}"
    return f"Added '{pattern.strip()}' to the {name.value} list"


@mcp.tool()
async def remove_filter_entry(list_name: str, pattern: str) -> str:
    try:
        name = _list_name(list_name)
        controller.update_policy(RemoveEntry(list_name=name, pattern=pattern))
    except PolicyUpdateError as e:
        return f"Couldn't remove that entry: {str(e)}"
    except ValueError as e:
        return str(e)
    except PersistenceError as e:
        return f"Removed, but couldn't save it: {str(e)}"
    return f"Removed '{pattern.strip()}' from the {name.value} list"


@mcp.tool()
async def rename_filter_entry(list_name: str, old: str, new: str) -> str:
    try:
        name = _list_name(list_name)
        controller.update_policy(RenameEntry(list_name=name, old=old, new=new))
    except PolicyUpdateError as e:
        return f"Couldn't rename that entry: {str(e)}"
    except ValueError as e:
        return str(e)
    except PersistenceError as e:
        return f"Renamed, but couldn't save it: {str(e)}"
    return f"Renamed '{old.strip()}' to '{new.strip()}' in the {name.value} list"


@mcp.tool()
async def import_filter_list(list_name: str, csv_text: str) -> str:
    """
    Replace a list with the rows of a CSV document.
    Args:
        list_name: allow or deny
        csv_text: CSV with a 'uri' header and one pattern per row
    """
    try:
        name = _list_name(list_name)
        policy = controller.import_list(name, rows_from_csv(csv_text))
    except ListImportError as e:
        return f"Couldn't import that list: {str(e)}"
    except ValueError as e:
        return str(e)
    except PersistenceError as e:
        return f"Imported, but couldn't save it: {str(e)}"
    return f"Imported {len(policy.get_list(name).entries)} entries into the {name.value} list"


@mcp.tool()
async def export_filter_list(list_name: str) -> str:
    try:
        name = _list_name(list_name)
    except ValueError as e:
        return str(e)
    return rows_to_csv(controller.export_list(name), ["uri"])


@mcp.tool()
async def check_target(target: str) -> str:
    """Show what the current policy would do with a host/path, without sending anything."""
    decision, policy = controller.policies.decide(target)
    return f"{target} -> {decision.value} (policy version {policy.version}, mode {policy.mode.value})"


@mcp.tool()
async def get_events(min_level: str = "INFO", limit: int = 50, after: Optional[int] = None) -> str:
    """
    Read the request/event log, most recent first.
    Args:
        min_level: DEBUG, INFO, WARNING, ERROR or GLOBAL
        limit: Max entries to return
        after: Only entries with a sequence number above this one
    """
    try:
        level = LogLevel.parse(min_level)
    except ValueError as e:
        return str(e)
    entries = controller.query_events(level, limit, after)
    return json.dumps([e.model_dump(mode="json") for e in entries], indent=2)


@mcp.tool()
async def export_request_log() -> str:
    return rows_to_csv(controller.events.to_rows(), ["method", "request", "blocked"])


@mcp.tool()
async def clear_events() -> str:
    controller.events.clear()
    return "Cleared the event log."


@mcp.tool()
async def set_log_level(level: str) -> str:
    try:
        settings = controller.set_log_level(level)
    except ValueError as e:
        return str(e)
    except PersistenceError as e:
        return f"Log level changed, but couldn't save it: {str(e)}"
    return f"Log level is now {settings.log_level.name}"


@mcp.tool()
async def set_port(port: int) -> str:
    try:
        settings = controller.set_port(port)
    except (ValidationError, BindError) as e:
        return f"Couldn't use port {port}: {str(e)}"
    except PersistenceError as e:
        return f"Port changed, but couldn't save it: {str(e)}"
    return f"Port is now {settings.port}"


@mcp.tool()
async def set_bind_address(address: str) -> str:
    """
    Change the address the proxy listens on. A running proxy moves to it
    only if the new address can be bound.
    """
    try:
        settings = controller.set_bind_address(address)
    except (ValidationError, BindError) as e:
        return f"Couldn't listen on {address}: {str(e)}"
    except PersistenceError as e:
        return f"Address changed, but couldn't save it: {str(e)}"
    return f"Listening address is now {settings.bind_address}"


@mcp.tool()
async def set_intercept_tls(enabled: bool) -> str:
    try:
        controller.set_intercept_tls(enabled)
    except PersistenceError as e:
        return f"Changed, but couldn't save it: {str(e)}"
    return "TLS interception enabled." if enabled else "TLS tunnels are relayed without interception."


def start():
    """Entry point for running the server directly."""
    mcp.run()


if __name__ == "__main__":
    start()
