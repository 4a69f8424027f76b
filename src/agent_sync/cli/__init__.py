"""
agent-sync CLI Module

Contains the command-line interface:
- main: CLI entry point with typer
- Commands: sync, status, sessions, replay, config
- output: Rich tables and panels
"""

from .main import app, main

__all__ = ["app", "main"]
