"""Relay connection status schema."""

from pydantic import BaseModel, Field


class ConnectionStatus(BaseModel):
    """Connectivity snapshot reported by the transport collaborator."""

    is_connected: bool = False
    connected_endpoints: list[str] = Field(default_factory=list)
