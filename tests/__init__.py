"""
Tests for flow-orchestrator.

helpers.py holds in-memory fakes for the external collaborators (agent
sessions, healer, project status) and builders for orchestration records.
"""
