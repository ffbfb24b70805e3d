"""
MCP Ports - shared port ledger and service registry for hardware MCP servers.

Sibling MCP servers started independently on one host claim network ports
through an append-only ledger file. This package implements the ledger,
randomized port allocation, locked registration, the server startup
contract, and a small process supervisor.
"""

__version__ = "0.1.0"
