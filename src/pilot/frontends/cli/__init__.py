"""CLI frontend for pilot.

Commands:
    pilot serve          Run the proxy server
    pilot classify       Show the routing decision for a request
    pilot count-tokens   Estimate input tokens for a request
    pilot transform      Show the backend request for a request

Example:
    $ export COPILOT_TOKEN=...
    $ pilot serve --port 8080
"""

from pilot.frontends.cli.main import main

__all__ = ["main"]
