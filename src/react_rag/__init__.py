"""ReAct retrieval-augmented chat package."""

from .config import AgentConfig, RetrievalConfig, Settings, WorkspaceConfig

__all__ = ["AgentConfig", "RetrievalConfig", "Settings", "WorkspaceConfig"]
