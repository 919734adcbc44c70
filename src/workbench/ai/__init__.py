"""Model client, prompts and the agent orchestration loop."""

from .client import AIClient, AIStreamEvent, ClientSettings, ModelClient

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "ModelClient"]
