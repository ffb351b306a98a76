"""
Subterm HTTP API Server.

Usage:
    # Start server
    uvicorn subterm.server:app

    # Or programmatically
    from subterm.server import app, create_app

    # Custom configuration
    app = create_app()
"""

from subterm.server.app import app, create_app

__all__ = ["app", "create_app"]
