"""Wiring of the agent loop from :class:`~workbench.services.settings.Settings`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from openai import AsyncOpenAI

from .ai.client import AIClient, ClientSettings
from .ai.generation import GenerationBackend, OpenAIGenerationBackend
from .ai.media import FFmpegToolkit, MediaToolkit
from .ai.orchestration.controller import ControllerConfig, TurnController, TurnListener, TurnResult
from .ai.orchestration.dispatcher import ActionDispatcher
from .ai.orchestration.model_call import AgentModel
from .ai.orchestration.sandbox import ScriptSandbox
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils
from .workspace.files import FileStoreSnapshot, VirtualFile

__all__ = ["Agent", "configure_logging", "create_agent"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Agent:
    """A ready-to-use controller plus the network client it owns."""

    controller: TurnController
    client: AIClient

    async def send(self, text: str, attachments: Sequence[VirtualFile] = ()) -> TurnResult:
        return await self.controller.send(text, attachments)

    def cancel(self) -> None:
        self.controller.cancel()

    async def aclose(self) -> None:
        await self.client.aclose()


def configure_logging(settings: Settings | None = None, *, log_dir: Path | str | None = None, force: bool = False) -> Path:
    """Configure logging for an embedding application; returns the log file path."""

    debug = bool(settings and settings.debug_logging)
    path = logging_utils.setup_logging(debug=debug, log_dir=log_dir, force=force)
    LOGGER.debug("Logging configured (debug=%s, path=%s)", debug, path)
    return path


def create_agent(
    settings: Settings | None = None,
    *,
    files: FileStoreSnapshot | None = None,
    listener: TurnListener | None = None,
    generation: GenerationBackend | None = None,
    media: MediaToolkit | None = None,
    openai_client: AsyncOpenAI | None = None,
) -> Agent:
    """Build an :class:`Agent`; settings default to the persisted store."""

    settings = settings or SettingsStore().load()
    if not settings.api_key:
        LOGGER.warning("No API key configured; model calls will fail until one is set.")
    LOGGER.debug(
        "Creating agent (model=%s, base_url=%s, api_key=%s)",
        settings.model,
        settings.base_url,
        redact_secret(settings.api_key),
    )

    client_settings = ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=settings.default_headers or None,
        metadata=settings.metadata or None,
        debug_logging=settings.debug_logging,
    )
    openai_client = openai_client or AsyncOpenAI(
        api_key=settings.api_key,
        base_url=settings.base_url,
        organization=settings.organization,
        timeout=settings.request_timeout,
        default_headers=dict(settings.default_headers) or None,
    )
    client = AIClient(client_settings, client=openai_client)

    dispatcher = ActionDispatcher(
        generation=generation
        or OpenAIGenerationBackend(
            openai_client,
            image_model=settings.image_model,
            video_model=settings.video_model,
            search_model=settings.search_model,
        ),
        media=media or FFmpegToolkit(ffmpeg=settings.ffmpeg_binary, ffprobe=settings.ffprobe_binary),
        sandbox=ScriptSandbox(timeout=settings.script_timeout),
    )
    model = AgentModel(
        client,
        max_attempts=settings.max_model_attempts,
        temperature=settings.temperature,
    )
    controller = TurnController(
        model,
        dispatcher,
        files=files,
        config=ControllerConfig.from_settings(settings),
        listener=listener,
    )
    return Agent(controller=controller, client=client)
