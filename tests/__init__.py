"""
Changeflow test suite.

This package contains:
- factories.py: Document builders and the in-memory Pipeline harness
- unit/: Unit tests (no external services)
- integration/: Pipeline, worker, HTTP and CLI tests on in-memory backends
"""
