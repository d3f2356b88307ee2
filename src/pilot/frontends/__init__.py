"""Frontends - user interfaces for pilot.

Submodules:
    cli/    Command-line interface
"""
