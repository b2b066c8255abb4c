"""
qodo-acp: Agent Client Protocol adapter for Qodo Command

Exposes a JSON-RPC agent interface over stdio and drives the ``qodo`` CLI as a
subprocess per session turn, streaming its output back as session updates.
"""

from .adapter import AcpAdapter
from .process_bridge import ProcessBridge
from .tool_parser import ToolCallParser

__all__ = ["AcpAdapter", "ProcessBridge", "ToolCallParser"]
