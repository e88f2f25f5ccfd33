"""
Integration tests for the mempool radar.

These tests verify that components work together correctly: a real
state machine, resolver, prevout cache, engine and publisher driven by a
queue feed, with only the node mocked.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
