"""Pilot - Messages API proxy for the Copilot Chat Completions backend.

Pilot lets a client that speaks the block-based Messages API talk to a
backend that speaks the delta-based Chat Completions API.

Layers:
    core/       Logging setup
    gateway/    Classifier, transformers, streaming transcoder, proxy server
    frontends/  Command-line interface

Quick Start:
    >>> from pilot.compose import create_copilot_proxy
    >>> await create_copilot_proxy(token="...", port=8080)

Transcoding a backend stream without a server:
    >>> from pilot.gateway.transforms import StreamTranscoder
    >>> transcoder = StreamTranscoder(model="claude-sonnet-4.5")
    >>> events = transcoder.feed(chunk) + transcoder.finish()
"""

from pilot.__version__ import __version__

__all__ = ["__version__"]
