"""Tool registry, client sessions and the dispatcher."""
