"""Pilot Gateway - Messages API front for the Copilot backend.

Components:
- classifier: Routing/billing category of each request
- transforms: Protocol conversion and the streaming transcoder
- clients: Resilient HTTP client for the backend
- copilot_proxy: The aiohttp server tying it together

Usage (via compose.py convenience functions):
    from pilot.compose import create_copilot_proxy
    import asyncio

    asyncio.run(create_copilot_proxy(token="...", port=8080))

Usage (direct):
    from pilot.gateway.auth import StaticTokenProvider
    from pilot.gateway.copilot_proxy import CopilotProxyConfig, CopilotProxyServer
    import asyncio

    async def main():
        server = CopilotProxyServer(
            config=CopilotProxyConfig(port=8080),
            token_provider=StaticTokenProvider("..."),
        )
        await server.serve()

    asyncio.run(main())
"""

from pilot.gateway.errors import ERROR_TYPE_MAP, ProtocolInvariantError
from pilot.gateway.tracing import RequestTracer

__all__ = [
    "ERROR_TYPE_MAP",
    "ProtocolInvariantError",
    "RequestTracer",
]
