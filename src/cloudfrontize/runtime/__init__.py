"""
Runtime execution of edge handlers.

- invocation: one handler call, settled exactly once, failing open
- edge_runtime: the ordered request/response pipeline (EdgeRunner)
"""
