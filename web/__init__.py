"""
Agent Bridge: web server.
FastAPI + WebSocket bridge between a browser session and the agent CLI.

Run:  python -m web [--port 3001] [--workspace-root ./workspaces]
"""

import logging
from typing import Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

from collaborators import BedrockTextSynthesis, TextSynthesis
from config import AppConfig, app_config
from web import api_agent, chat
from web.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None, synthesis: Optional[TextSynthesis] = None) -> FastAPI:
    """Build the application with its own orchestrator (stored on ``app.state``)."""
    config = config or app_config
    if synthesis is None:
        # The Bedrock client is only created on first use
        synthesis = BedrockTextSynthesis()

    app = FastAPI(title=config.title)
    app.state.orchestrator = Orchestrator(config, synthesis)

    @app.on_event("shutdown")
    async def _on_shutdown():
        """Stop agent runs and dev servers so nothing outlives the server."""
        await app.state.orchestrator.shutdown()
        logger.info("Shutdown complete")

    app.include_router(api_agent.router)
    app.include_router(chat.router)
    return app


app = create_app()
