"""HTTP API — FastAPI app over the agent store, scheduler and trigger router."""
