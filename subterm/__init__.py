"""
subterm - sandbox lifecycle manager for browser terminal sessions.

Each session gets one isolated container with resource limits. The
gateway caps how many run at once, evicts idle ones, deregisters
sandboxes that exit on their own and stops everything on shutdown.

Run the HTTP gateway:
    subterm-gateway --port 4000

Or embed it:
    from subterm.server import create_app
"""

__version__ = "0.1.0"
