"""Unit tests for the edge runtime.

Fast, isolated tests for individual components.
Filesystem access goes through pytest's tmp_path only.
"""
