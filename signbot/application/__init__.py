"""Application layer: FastAPI app, middleware, routes and the resilience context."""
