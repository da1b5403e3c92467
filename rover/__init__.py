"""Rover: run AI coding-agent CLIs through multi-step workflows."""

__version__ = "0.4.0"
