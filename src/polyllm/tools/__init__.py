"""Auxiliary tool-server processes attached to model handles."""

from polyllm.tools.process import ToolServer, ToolServerPool

__all__ = ["ToolServer", "ToolServerPool"]
