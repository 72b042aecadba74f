"""Test fixtures for vloop.

This package provides reusable test fixtures for all vloop components:
- core: Clock, task, queue and loop fixtures plus threading helpers
"""
