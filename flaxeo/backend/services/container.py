"""Wiring of every service the application needs, built once per app."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from flaxeo.backend.config import AppConfig, AppPaths
from flaxeo.backend.services.backend_service import BackendService
from flaxeo.backend.services.dispatcher import GenerationDispatcher
from flaxeo.backend.services.gallery import GalleryService
from flaxeo.backend.services.inference_client import InferenceClient
from flaxeo.backend.services.log_buffer import LogBuffer
from flaxeo.backend.services.network_service import NetworkService
from flaxeo.backend.services.process_supervisor import DEFAULT_READY_PATTERN, ProcessSupervisor, Slot
from flaxeo.backend.services.temp_resources import TempResourceManager
from flaxeo.backend.ws import ConnectionManager, EventBroadcaster, EventType, WebSocketHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    paths: AppPaths
    log_buffer: LogBuffer
    connections: ConnectionManager
    broadcaster: EventBroadcaster
    ws_handler: WebSocketHandler
    cli: ProcessSupervisor
    server: ProcessSupervisor
    temp: TempResourceManager
    backend: BackendService
    gallery: GalleryService
    network: NetworkService
    dispatcher: GenerationDispatcher

    @classmethod
    def build(
        cls,
        paths: AppPaths,
        port: int = 3000,
        local_enabled: bool = False,
        inference_transport: Optional[httpx.AsyncBaseTransport] = None,
        backend_transport: Optional[httpx.AsyncBaseTransport] = None,
        log_capacity: Optional[int] = None,
        ready_timeout: Optional[float] = None,
    ) -> "Services":
        paths.ensure()
        log_buffer = LogBuffer(log_capacity or AppConfig.get_log_capacity())
        connections = ConnectionManager(default_events=[e.value for e in EventType])
        broadcaster = EventBroadcaster(connections)

        cli = ProcessSupervisor(Slot.CLI, log_buffer, broadcaster)
        server = ProcessSupervisor(
            Slot.SERVER,
            log_buffer,
            broadcaster,
            ready_pattern=DEFAULT_READY_PATTERN,
            ready_timeout=ready_timeout if ready_timeout is not None else AppConfig.get_ready_timeout(),
        )
        temp = TempResourceManager(paths.temp_dir)
        backend = BackendService(paths, transport=backend_transport)
        gallery = GalleryService(paths.output_dir)
        network = NetworkService(log_buffer, port=port, local_enabled=local_enabled, listener=broadcaster)
        dispatcher = GenerationDispatcher(
            paths=paths,
            cli=cli,
            server=server,
            temp=temp,
            backend=backend,
            gallery=gallery,
            log_buffer=log_buffer,
            client=InferenceClient(transport=inference_transport),
        )
        ws_handler = WebSocketHandler(connections, commands={
            "cancel-cli": dispatcher.cancel_cli,
            "status": _async_status(dispatcher),
        })

        logger.info(f"Resources path: {paths.root}")
        return cls(
            paths=paths,
            log_buffer=log_buffer,
            connections=connections,
            broadcaster=broadcaster,
            ws_handler=ws_handler,
            cli=cli,
            server=server,
            temp=temp,
            backend=backend,
            gallery=gallery,
            network=network,
            dispatcher=dispatcher,
        )

    async def shutdown(self) -> None:
        """Stop every child process this app started."""
        await self.network.shutdown()
        for supervisor in (self.cli, self.server):
            if supervisor.is_active:
                logger.info(f"Stopping {supervisor.slot} process")
                await supervisor.stop()


def _async_status(dispatcher: GenerationDispatcher):
    async def status():
        return dispatcher.status()
    return status
