"""Gremlin client building blocks for Azure Cosmos DB: websocket dialer, response headers, retries and metrics."""

__version__ = "0.1.0"