"""FastAPI backend: routers, services, WebSocket push and configuration."""
