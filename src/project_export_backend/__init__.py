"""
Project Export Backend - REST API for exporting project documents

This package provides a FastAPI-based web service that turns the files of a
project into a single downloadable document. It enables:

- Markdown exports combining every (or a selection of) project file
- PDF exports rendered through Pandoc
- Deduplication of identical concurrent exports with a distributed lock
- Artifact caching with transparent compression
- Status polling for long-running exports

Key Components:
    - main: FastAPI application, HTTP endpoints and composition root
    - orchestrator: Export pipeline controller
    - cache / cache_backend / cache_keys: Namespaced TTL cache over Redis or memory
    - locking: Distributed lock with owner-checked release
    - status_tracker: Export progress records and state machine
    - collaborators: Ports for file retrieval, Markdown, PDF and storage
    - models: Pydantic models for request/response validation
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn project_export_backend.main:app --reload --host 0.0.0.0 --port 8000

Architecture Principles:
    - The orchestrator depends only on ports, never on concrete adapters
    - Cache failures degrade the service, they never fail a request on their own
    - Async-first API design; blocking work runs off the event loop
    - Poll-only progress reporting
"""
