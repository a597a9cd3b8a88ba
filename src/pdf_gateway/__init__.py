"""
PDF Gateway - metering reverse proxy in front of a PDF processing engine

This package provides a FastAPI service that sits between the web tier and a
separately built PDF engine. It:

- Builds, launches, health-checks and stops the engine as a child process
- Admits processing requests according to the caller's plan (anonymous,
  free, pro) and today's usage
- Forwards requests to the engine and streams responses back unchanged
- Records successful operations and increments daily usage counters

Key Components:
    - main: FastAPI application factory and HTTP endpoints
    - supervisor: Engine build/spawn/health-check/shutdown lifecycle
    - metering: Admission decisions (401/403/429 or admit)
    - proxy: Request forwarding and post-success accounting
    - plans / auth: Bearer token to tier and limits
    - database / usage_store: SQLite counters and operation log
    - configuration: OmegaConf defaults merged with environment overrides

Usage:
    Run the gateway with:
        uvicorn pdf_gateway.main:app --host 0.0.0.0 --port 5001

    Skip building and launching the engine (e.g. it runs elsewhere):
        PDF_BACKEND_AUTOSTART=false uvicorn pdf_gateway.main:app
"""
