"""
Factory for creating and initializing the graph layer.

Creates a FalkorGraphAdapter from FalkorDBSettings config.
Returns None if graph layer is disabled (MCP_FALKORDB_ENABLED=false).
"""

import logging

from ..config import FalkorDBSettings
from .client import FalkorGraphAdapter

logger = logging.getLogger(__name__)


async def create_graph_layer(config: FalkorDBSettings) -> FalkorGraphAdapter | None:
    """
    Create and initialize the FalkorDB graph layer if enabled.

    Returns:
        An initialized FalkorGraphAdapter if enabled, None otherwise.
    """
    if not config.enabled:
        logger.info("FalkorDB graph layer disabled (MCP_FALKORDB_ENABLED=false)")
        return None

    password = config.password.get_secret_value() if config.password else None

    adapter = FalkorGraphAdapter(
        host=config.host,
        port=config.port,
        password=password,
        graph_name=config.graph_name,
        max_connections=config.max_connections,
    )

    await adapter.initialize()

    logger.info(f"Graph layer initialized: {config.host}:{config.port}/{config.graph_name}")
    return adapter
