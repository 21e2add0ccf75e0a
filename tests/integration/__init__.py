"""
taskscope: integration test package marker.

File: tests/integration/__init__.py
Last updated: 2026-10-19

Purpose
- Test package marker file for subprocess-level CLI contracts.
"""
