"""
Bridgeport HTTP Server

FastAPI application exposing the integration runtime: webhook ingestion,
connection management, sync passes and circuit status.

Modules:
- app: application factory, routes and error mapping
"""
