"""agentweave: branch coordination and integration for multi-agent code generation."""

__version__ = "0.1.0"
