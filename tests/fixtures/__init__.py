"""
Test fixtures for the edge runtime

This package contains fixtures used for testing:
- Sample edge functions (edge_functions/*.py)
- A multi-hook directory sharing a helper module (edge_functions/multi_hook_app/)
"""

from pathlib import Path

# Path to fixtures directory
FIXTURES_DIR = Path(__file__).parent
EDGE_DIR = FIXTURES_DIR / 'edge_functions'
