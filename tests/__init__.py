"""
Test suite for CloudFrontize.

Test structure:
- unit/ - Unit tests (fast, isolated)
- integration/ - Pipeline, ASGI and live-server tests
- fixtures/ - Sample edge functions shared by both

Run tests:
    pytest                      # All tests
    pytest tests/unit           # Unit tests only
    pytest -m "not integration" # Skip the live server
    pytest -k "sandbox"         # Tests matching name

Philosophy:
    Edge functions run against real traffic upstream. Locally every
    failure must be loud in the log and never take the request down.
"""
