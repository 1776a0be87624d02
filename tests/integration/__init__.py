"""Integration tests for the edge runtime.

Full pipeline runs against the sample edge functions, the ASGI app driven
directly, and a live uvicorn server.
"""
