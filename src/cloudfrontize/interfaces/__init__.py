"""
Protocol interfaces for the edge runtime.

- asgi: static file server that consumes the runtime's outcome contract
"""
