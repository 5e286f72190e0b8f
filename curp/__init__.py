"""Asyncio client, wire messages, connections and a put benchmark for the CURP consensus protocol."""

__version__ = "0.1.0"

__all__ = ["benchmark", "client", "cmd", "connect", "errors", "messages"]