"""Discovery server entry point."""

import asyncio
import logging

from discovery.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def build_session():
    """Wire the store, tools, agent bus and orchestrator together."""
    from discovery.agents import AgentBus
    from discovery.agents.planner import PlannerAgent
    from discovery.branches import BranchManager
    from discovery.citations import CitationTracker
    from discovery.corpus import load_corpus
    from discovery.llm.client import ClaudeTextGenerator
    from discovery.session import DiscoverySession
    from discovery.store import DiscoveryStore
    from discovery.tools import registry

    store = DiscoveryStore.get()
    if settings.corpus_path is not None:
        await load_corpus(settings.corpus_path, store)

    registry.freeze()
    bus = AgentBus()
    bus.register(PlannerAgent(registry))
    await bus.start()

    session = DiscoverySession(
        store=store,
        branches=BranchManager(store),
        citations=CitationTracker(store),
        registry=registry,
        bus=bus,
        generator=ClaudeTextGenerator(),
    )
    return store, bus, session


async def serve() -> None:
    from discovery.web.server import WebServer

    store, bus, session = await build_session()
    server = WebServer(session, store)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        await bus.stop()


def main() -> None:
    """Start the discovery HTTP server."""
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is empty — planning and replies will fail")
    logger.info(
        "Starting discovery server with models chat=%s planner=%s...",
        settings.chat_model,
        settings.planner_model,
    )
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
