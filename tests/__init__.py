"""
Test Suite for Ticket Worker

This package contains tests for the session lifecycle components:
- workspace store, eviction and pruning
- process supervision and the orchestrator
- configuration, secrets, comments, worker and the admin API
"""
